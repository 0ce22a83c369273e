"""
Enrichment modules for NetLens
"""

from .ptr_resolver import PTRResolver

__all__ = ['PTRResolver']
