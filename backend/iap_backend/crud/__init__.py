"""CRUD 操作模块"""
from .profile import create_profile, get_profile

__all__ = [
    "create_profile",
    "get_profile",
]
