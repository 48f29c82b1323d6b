"""
Service layer: placement detection, QR composition, export and downloads.
"""
