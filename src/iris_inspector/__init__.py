"""
IRIS inspector - live decoder and distributor for the kernel's debug event stream.
"""

__version__ = "0.1.0"
