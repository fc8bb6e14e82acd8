"""Build description module.

This module provides:
- Pydantic schemas for the YAML/JSON build description format
- Loading descriptions into immutable StageSpec lists
"""

from stagebuild.description.io import (
    BuildDescription,
    load_description,
    parse_description_data,
)

__all__ = ["BuildDescription", "load_description", "parse_description_data"]
