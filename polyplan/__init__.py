"""
Polyhouse placement engine.

Plans non-overlapping rectangular polyhouses over an irregular parcel,
honouring terrain exclusions and solar orientation limits.
"""
__version__ = "0.1.0"
