"""
crossbroker - cross-backend protocol conformance and fuzz-regression pipeline
"""
__version__ = "0.1.0"
