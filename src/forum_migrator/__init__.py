"""
Vanilla Forums to Supabase Migration Tool

Moves users, categories, discussions and comments from a Vanilla Forums MySQL
database into a Supabase-backed forum, in re-runnable stages that exchange JSON
files through a shared working directory.
"""

from __future__ import annotations

from .cli import main
from .content_converter import ConvertedContent, convert_content
from .exceptions import ConfigError, ExtractionError, MigrationError, TargetStoreError
from .id_mapper import IdMappings, generate_unique_slug, get_mapped_id, load_mappings, map_id, save_mappings
from .target_store import TargetStore
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "ConvertedContent",
    "ExtractionError",
    "IdMappings",
    "MigrationError",
    "TargetStore",
    "TargetStoreError",
    "convert_content",
    "generate_unique_slug",
    "get_mapped_id",
    "load_mappings",
    "main",
    "map_id",
    "save_mappings",
    "setup_logging",
]
