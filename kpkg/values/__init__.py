"""Package values: resolution, validation and patch generation.

User supplied values are resolved into strings, validated against the value
definitions of the package manifest and turned into JSON patches that the
manifest adapters apply to the objects they install.
"""

from .patch import TargetPatch, TargetPatches, TargetResource, generate_patches
from .resolver import ValueResolver
from .template import render_value
from .validate import (
    validate_package_values,
    validate_resolved_values,
    validate_single,
)

__all__ = [
    "TargetPatch",
    "TargetPatches",
    "TargetResource",
    "generate_patches",
    "ValueResolver",
    "render_value",
    "validate_package_values",
    "validate_resolved_values",
    "validate_single",
]
