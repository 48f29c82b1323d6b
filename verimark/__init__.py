"""
Verimark: product authenticity designs.

Companies register products, receive QR codes bound to ledger-anchored
hashes, and export print-ready designs with those codes composited onto
their own banner templates.
"""

__version__ = "0.1.0"
