"""
Source adapters: one per listing site, looked up by name in AdapterRegistry.
"""
from .base import FetchResult, SeenCache, SourceAdapter
from .internshala import InternshalaAdapter
from .linkedin import ApiFallbackPolicy, LinkedInAdapter
from .registry import AdapterRegistry

__all__ = [
    'AdapterRegistry',
    'ApiFallbackPolicy',
    'FetchResult',
    'InternshalaAdapter',
    'LinkedInAdapter',
    'SeenCache',
    'SourceAdapter',
]
