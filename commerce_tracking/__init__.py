"""
Commerce Tracking Service

Receives storefront, payment, shipping, support and inventory webhooks,
records them in per-domain spreadsheets, keeps them in sync with the CMS
and derives analytics and business intelligence tables from them.
"""

__version__ = "1.0.0"
