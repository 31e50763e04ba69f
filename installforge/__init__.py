"""
installforge — compose modules into offline installer archives.
"""

__version__ = "0.1.0"
