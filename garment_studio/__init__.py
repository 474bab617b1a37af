"""
Garment Studio Pipeline

Staged product-photo editing over external inference services.
"""

__version__ = "1.0.0"
