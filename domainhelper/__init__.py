"""Domain and certificate manager for Apache/Nginx hosts."""

__version__ = "2.1.0"
