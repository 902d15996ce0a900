"""
Cutout Orders - background removal order fulfillment.
"""

__version__ = "1.0.0"
