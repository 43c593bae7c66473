"""
CMS Integration Module
"""
from .client import StrapiClient, flatten_entry
from .mapping import map_strapi_order, map_strapi_product

__all__ = ["StrapiClient", "flatten_entry", "map_strapi_order", "map_strapi_product"]
