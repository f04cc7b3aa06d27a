"""eldim - encrypted off-site backup relay"""

__version__ = "0.7.0"
