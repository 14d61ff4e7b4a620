"""Generation of JSON patches from package values.

Every target of a value definition becomes a `TargetPatch`: a single RFC 6902
operation that carries the actual value, together with a matcher selecting
either a kubernetes object or the values of a `HelmRelease` for a chart.
Patches are applied to raw kubernetes documents by the manifest adapters.
"""

from dataclasses import dataclass
import logging
from typing import Any

import jsonpatch

from kpkg.exceptions import PatchError
from kpkg.manifest import (
    PackageManifest,
    TypedObjectReference,
    ValueDefinitionTarget,
    split_api_version,
)

from .template import render_value

__all__ = [
    "TargetResource",
    "TargetPatch",
    "TargetPatches",
    "generate_patches",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetResource:
    """Selects the object a patch applies to."""

    group: str
    version: str
    kind: str
    name: str
    namespace: str | None = None

    @classmethod
    def from_reference(cls, ref: TypedObjectReference) -> "TargetResource":
        """Create a matcher from an object reference.

        The `apiGroup` holds the group and version, a bare version selects the
        core group.
        """
        group, version = split_api_version(ref.api_group or "")
        return cls(
            group=group,
            version=version,
            kind=ref.kind,
            name=ref.name,
            namespace=ref.namespace,
        )

    def match(self, doc: dict[str, Any]) -> bool:
        """Return true if the document is the selected object."""
        metadata = doc.get("metadata") or {}
        return (
            split_api_version(doc.get("apiVersion") or "") == (self.group, self.version)
            and doc.get("kind") == self.kind
            and metadata.get("name") == self.name
            and (self.namespace is None or metadata.get("namespace") == self.namespace)
        )


@dataclass
class TargetPatch:
    """A patch for a single value target."""

    patch: jsonpatch.JsonPatch
    resource: TargetResource | None = None
    chart_name: str | None = None

    def match_resource(self, doc: dict[str, Any]) -> bool:
        return self.resource is not None and self.resource.match(doc)

    def match_helm_release(self, doc: dict[str, Any]) -> bool:
        if self.chart_name is None:
            return False
        chart = ((doc.get("spec") or {}).get("chart") or {}).get("spec") or {}
        return chart.get("chart") == self.chart_name

    def apply_to_resource(self, doc: dict[str, Any]) -> None:
        """Patch the document in place if it is the selected object."""
        if self.match_resource(doc):
            _replace(doc, self._apply(doc))

    def apply_to_helm_release(self, doc: dict[str, Any]) -> None:
        """Patch the values of a HelmRelease document for the selected chart."""
        if not self.match_helm_release(doc):
            return
        spec = doc["spec"]
        if not spec.get("values"):
            spec["values"] = {}
        spec["values"] = self._apply(spec["values"])

    def _apply(self, doc: dict[str, Any]) -> dict[str, Any]:
        try:
            return self.patch.apply(doc)
        except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as err:
            raise PatchError(f"Unable to apply patch {self.patch.to_string()}: {err}") from err


def _replace(doc: dict[str, Any], patched: dict[str, Any]) -> None:
    doc.clear()
    doc.update(patched)


class TargetPatches(list[TargetPatch]):
    """All patches generated for a package."""

    def apply_to_resource(self, doc: dict[str, Any]) -> None:
        for patch in self:
            patch.apply_to_resource(doc)

    def apply_to_helm_release(self, doc: dict[str, Any]) -> None:
        for patch in self:
            patch.apply_to_helm_release(doc)


def generate_target_patch(target: ValueDefinitionTarget, value: str) -> TargetPatch:
    """Create the patch for a value target."""
    actual: Any = value
    if target.value_template:
        actual = render_value(target.value_template, value)
    operation = {"op": target.patch.op, "path": target.patch.path, "value": actual}
    try:
        patch = jsonpatch.JsonPatch([operation])
    except (jsonpatch.InvalidJsonPatch, jsonpatch.JsonPointerException) as err:
        raise PatchError(f"Invalid patch {operation}: {err}") from err
    result = TargetPatch(patch=patch)
    if target.resource is not None:
        result.resource = TargetResource.from_reference(target.resource)
    elif target.chart_name is not None:
        result.chart_name = target.chart_name
    return result


def generate_patches(manifest: PackageManifest, values: dict[str, str]) -> TargetPatches:
    """Create a patch for every target of every value definition with a value.

    Values are not validated here, run validation before generating patches.
    """
    result = TargetPatches()
    for name in sorted(manifest.value_definitions):
        if (value := values.get(name)) is None:
            continue
        for target in manifest.value_definitions[name].targets:
            result.append(generate_target_patch(target, value))
    _LOGGER.debug("Generated %d patches for %s", len(result), manifest.name)
    return result
