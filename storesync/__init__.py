"""
StoreSync - offline-capable sync engine between a local store and WooCommerce / QuickBooks Online
"""

__version__ = "1.0.0"
