"""
Categories module for organizing process templates in a tree.
"""

from src.categories.tree import CategoryTreeStore, TemplateCounter

__all__ = [
    "CategoryTreeStore",
    "TemplateCounter",
]
