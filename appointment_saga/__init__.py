"""Medical appointment booking saga for PE and CL."""

__version__ = "0.1.0"
