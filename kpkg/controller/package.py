"""Reconciler for Package and ClusterPackage objects.

A reconcile pass drives a package from declared to ready:

1. Ensure the deletion finalizer and the PackageInfo holding the manifest.
2. Wait for the PackageInfo, or fail with its reason if fetching failed.
3. Validate dependencies, creating required packages that can be resolved.
4. Resolve and validate the values and generate patches.
5. Run every manifest adapter the manifest needs.

The pass always ends with a finalize step that records owned objects, prunes
objects no longer owned after a successful pass and writes the changes back to
the store. Packages being deleted wait for their owned packages and package
infos to disappear before the finalizer is removed.
"""

import logging

from kpkg.adapter import AdapterKind, AdapterResult, ManifestAdapter, required_adapters
from kpkg.config import PackageControllerConfig
from kpkg.dependency import (
    INSTALLED_AS_DEPENDENCY_ANNOTATION,
    DependencyManager,
    Requirement,
    ValidationStatus,
    component_ref,
    is_installed_as_dependency,
    package_ref,
)
from kpkg.exceptions import KpkgException, MultiError, ObjectNotFoundError
from kpkg.manifest import (
    DOMAIN,
    PACKAGE_INFO_KIND,
    PACKAGE_KIND,
    AnyObject,
    BasePackage,
    ClusterPackage,
    Condition,
    ConditionStatus,
    NamedResource,
    ObjectMeta,
    OwnedResourceRef,
    Package,
    PackageInfo,
    PackageInfoSpec,
    PackageInfoTemplate,
    PackageManifest,
    PackageSpec,
)
from kpkg.names import package_info_name
from kpkg.owners import (
    add_refs,
    is_managed,
    owner_reference,
    remove_ref,
    to_owned_ref,
)
from kpkg.repo import RepoAggregator
from kpkg.store import DeletionPropagation, Store
from kpkg.values import (
    TargetPatches,
    ValueResolver,
    generate_patches,
    validate_resolved_values,
)

from . import conditions
from .conditions import ConditionType, Reason
from .requeue import ReconcileResult, always, never, on_error

__all__ = [
    "PackageReconciler",
    "PACKAGE_DELETION_FINALIZER",
]

_LOGGER = logging.getLogger(__name__)

PACKAGE_DELETION_FINALIZER = f"{DOMAIN}/packageDeletion"


class PackageReconciler:
    """Reconciles Package and ClusterPackage objects."""

    def __init__(
        self,
        store: Store,
        repos: RepoAggregator,
        adapters: dict[AdapterKind, ManifestAdapter],
        config: PackageControllerConfig | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            store: The store holding the cluster objects.
            repos: Lookup of packages in the package repositories.
            adapters: The manifest adapters available for installing content.
                A manifest that needs an adapter not in this map is rejected.
            config: The controller configuration.
        """
        self.store = store
        self.repos = repos
        self.adapters = adapters
        self.config = config or PackageControllerConfig()
        self.value_resolver = ValueResolver(store)
        self.dependency_manager = DependencyManager(store, repos)
        for adapter in adapters.values():
            adapter.controller_init(store)

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """Run a reconcile pass for the package with the given identity."""
        cls: type[BasePackage] = Package if resource_id.kind == PACKAGE_KIND else ClusterPackage
        if (pkg := self.store.get_object(resource_id, cls)) is None:
            _LOGGER.debug("Package %s not found, nothing to reconcile", resource_id)
            return never()

        context = _PackageReconcileContext(self, pkg)
        if pkg.deleting:
            return await context.reconcile_after_deletion()
        if pkg.spec.suspend:
            _LOGGER.info("Package %s is suspended", resource_id)
            return always(self.config)
        _LOGGER.info("Reconciling %s", resource_id)
        return await context.reconcile()


class _PackageReconcileContext:
    """State of a single reconcile pass of a package."""

    def __init__(self, reconciler: PackageReconciler, pkg: BasePackage) -> None:
        self.reconciler = reconciler
        self.store = reconciler.store
        self.config = reconciler.config
        self.pkg = pkg
        self.info: PackageInfo | None = None
        self.is_success = False
        self.should_update_status = False
        self.should_update_resource = False
        self.current_owned_resources: list[OwnedResourceRef] = []
        self.current_owned_packages: list[OwnedResourceRef] = []

    @property
    def conditions(self) -> list[Condition]:
        return self.pkg.status.conditions

    def set_should_update(self, changed: bool) -> None:
        self.should_update_status = self.should_update_status or changed

    def set_failed(self, reason: str, message: str) -> None:
        self.set_should_update(conditions.set_failed(self.conditions, reason, message))

    def set_unknown(self, reason: str, message: str) -> None:
        self.set_should_update(conditions.set_unknown(self.conditions, reason, message))

    async def reconcile(self) -> ReconcileResult:
        self.set_should_update(conditions.set_initial(self.conditions))
        self.ensure_finalizer()
        try:
            info = self.ensure_package_info()
        except KpkgException as err:
            _LOGGER.warning("Could not ensure PackageInfo of %s: %s", self.pkg.resource_id, err)
            return always(self.config, err)

        ready = conditions.find_condition(info.conditions, ConditionType.READY)
        if ready is not None and ready.status == ConditionStatus.TRUE:
            _LOGGER.debug("PackageInfo %s is ready", info.name)
            return await self.reconcile_package_info_ready(info)
        if ready is not None and ready.status == ConditionStatus.FALSE:
            self.set_failed(ready.reason or Reason.SYNC_FAILED, ready.message)
            return self.finalize()
        self.set_unknown(Reason.PENDING, "PackageInfo status is unknown")
        return self.finalize()

    async def reconcile_package_info_ready(self, info: PackageInfo) -> ReconcileResult:
        if (manifest := info.status.manifest) is None:
            self.set_failed(Reason.UNSUPPORTED_FORMAT, "manifest must not be nil")
            return self.finalize_no_requeue()

        if not await self.ensure_dependencies(manifest):
            return self.finalize()

        patches: TargetPatches
        try:
            resolved = self.reconciler.value_resolver.resolve(self.pkg.spec.values)
            validate_resolved_values(manifest, resolved)
        except KpkgException as err:
            self.set_failed(Reason.VALUE_CONFIGURATION_INVALID, str(err))
            return self.finalize_with_error(err)
        try:
            patches = generate_patches(manifest, resolved)
        except KpkgException as err:
            self.set_failed(Reason.INSTALLATION_FAILED, str(err))
            return self.finalize_with_error(err)

        # All adapters must be available before any of them runs
        adapters: list[ManifestAdapter] = []
        for kind in required_adapters(manifest):
            if (adapter := self.reconciler.adapters.get(kind)) is None:
                self.set_failed(Reason.UNSUPPORTED_FORMAT, f"{kind} not supported")
                return self.finalize_no_requeue()
            adapters.append(adapter)

        results: list[AdapterResult] = []
        errors: list[Exception] = []
        for adapter in adapters:
            try:
                result = await adapter.reconcile(self.pkg, info, patches)
            except KpkgException as err:
                _LOGGER.warning("Adapter failed for %s: %s", self.pkg.resource_id, err)
                errors.append(err)
            else:
                results.append(result)
                add_refs(self.current_owned_resources, *result.owned_resources)

        if errors:
            error = MultiError(errors)
            self.set_failed(Reason.INSTALLATION_FAILED, str(error))
            return self.finalize_with_error(error)
        if self.handle_adapter_results(results):
            self.after_success(info, results)
        return self.finalize()

    async def reconcile_after_deletion(self) -> ReconcileResult:
        _LOGGER.info("Reconciling deletion of %s", self.pkg.resource_id)
        self.set_unknown(Reason.PENDING, "Package is being deleted")
        if PACKAGE_DELETION_FINALIZER in self.pkg.metadata.finalizers:
            errors: list[Exception] = []
            if self.pkg.status.owned_packages:
                errors.extend(self.prune_owned_packages(prune_all=True))
                _LOGGER.info("Waiting for deletion of required packages of %s", self.pkg.resource_id)
            elif self.pkg.status.owned_package_infos:
                errors.extend(self.prune_owned_package_infos(prune_all=True))
                _LOGGER.info("Waiting for deletion of package infos of %s", self.pkg.resource_id)
            else:
                self.pkg.metadata.finalizers.remove(PACKAGE_DELETION_FINALIZER)
                self.should_update_resource = True
            if errors:
                return self.finalize_with_error(MultiError(errors))
        return self.finalize_no_requeue()

    def ensure_finalizer(self) -> None:
        if PACKAGE_DELETION_FINALIZER not in self.pkg.metadata.finalizers:
            self.pkg.metadata.finalizers.append(PACKAGE_DELETION_FINALIZER)
            self.should_update_resource = True

    def ensure_package_info(self) -> PackageInfo:
        """Create or update the PackageInfo for the package version."""
        template = self.pkg.spec.package_info
        spec = PackageInfoSpec(
            name=template.name,
            version=template.version,
            repository_name=template.repository_name,
        )
        name = package_info_name(self.pkg)
        resource_id = NamedResource(PACKAGE_INFO_KIND, None, name)
        if (info := self.store.get_object(resource_id, PackageInfo)) is None:
            _LOGGER.debug("Creating PackageInfo %s", name)
            info = self.store.create(PackageInfo(metadata=ObjectMeta(name=name), spec=spec))
        elif info.spec != spec:
            _LOGGER.debug("Updating PackageInfo %s", name)
            info.spec = spec
            info = self.store.update(info)
        self.set_should_update(add_refs(self.pkg.status.owned_package_infos, to_owned_ref(info)))
        self.info = info
        return info

    async def ensure_dependencies(self, manifest: PackageManifest) -> bool:
        """Create resolvable dependencies and check the readiness of all of them.

        Returns true if all required packages and components are ready.
        """
        _LOGGER.debug("Ensuring dependencies of %s: %s", self.pkg.resource_id, manifest.dependencies)
        try:
            result = await self.reconciler.dependency_manager.validate(
                self.pkg.name,
                self.pkg.namespace or "",
                manifest,
                self.pkg.spec.package_info.version,
            )
        except KpkgException as err:
            self.set_failed(Reason.INSTALLATION_FAILED, f"error validating dependencies: {err}")
            return False

        failed: list[str] = []
        if result.status == ValidationStatus.RESOLVABLE:
            for requirement in result.requirements:
                # Transitive requirements are created by the packages requiring them
                if requirement.transitive:
                    continue
                try:
                    await self.create_requirement(requirement)
                except KpkgException as err:
                    _LOGGER.warning("Could not install required package %s: %s", requirement.name, err)
                    failed.append(requirement.name)
            if failed:
                self.set_failed(
                    Reason.INSTALLATION_FAILED,
                    f"required package(s) not installed: {','.join(failed)}",
                )
                return False
        elif result.status == ValidationStatus.CONFLICT:
            parts = [
                f"need version {conflict.required.version} of {conflict.actual.name} but found {conflict.actual.version}"
                for conflict in result.conflicts
            ]
            self.set_failed(Reason.INSTALLATION_FAILED, f"conflicting dependencies: {','.join(parts)}")
            return False

        required: list[tuple[str, NamedResource, type[BasePackage]]] = [
            (dep.name, NamedResource(ClusterPackage.kind, None, dep.name), ClusterPackage)
            for dep in manifest.dependencies
        ]
        parent = package_ref(self.pkg)
        for cmp in manifest.components:
            ref = component_ref(parent, manifest, cmp)
            required.append((ref.name, NamedResource(Package.kind, ref.namespace, ref.name), Package))

        owned_packages: list[OwnedResourceRef] = []
        waiting_for: list[str] = []
        for name, resource_id, cls in required:
            if (required_pkg := self.store.get_object(resource_id, cls)) is None:
                waiting_for.append(name)
                continue
            owned_packages.append(to_owned_ref(required_pkg))
            if conditions.is_condition_true(required_pkg.conditions, ConditionType.FAILED):
                failed.append(required_pkg.name)
            elif not conditions.is_condition_true(required_pkg.conditions, ConditionType.READY):
                waiting_for.append(required_pkg.name)

        if failed:
            self.set_failed(
                Reason.INSTALLATION_FAILED,
                f"required package(s) not installed: {','.join(failed)}",
            )
            return False
        if waiting_for:
            self.set_unknown(
                Reason.PENDING, f"waiting for required package(s) {','.join(waiting_for)}"
            )
            return False
        add_refs(self.current_owned_packages, *owned_packages)
        return True

    async def create_requirement(self, requirement: Requirement) -> None:
        """Create or update the package for a direct requirement.

        Dependencies are installed as ClusterPackages, components as Packages
        owned by this package.
        """
        repo = await self.reconciler.repos.repo_for_package(requirement.name)
        spec = PackageSpec(
            package_info=PackageInfoTemplate(
                name=requirement.name,
                version=requirement.version,
                repository_name=repo.name,
            )
        )
        new_pkg: BasePackage
        if (component := requirement.component) is None:
            new_pkg = ClusterPackage(metadata=ObjectMeta(name=requirement.name), spec=spec)
        else:
            new_pkg = Package(
                metadata=ObjectMeta(
                    name=component.name,
                    namespace=component.namespace,
                    owner_references=[owner_reference(self.pkg)],
                ),
                spec=spec,
            )
        new_pkg.metadata.annotations[INSTALLED_AS_DEPENDENCY_ANNOTATION] = "true"

        existing = self.store.get_object(new_pkg.resource_id, type(new_pkg))
        if existing is None:
            _LOGGER.info("Creating required package %s", new_pkg.resource_id)
            self.store.create(new_pkg)
            return
        existing.spec.package_info = spec.package_info
        existing.metadata.annotations[INSTALLED_AS_DEPENDENCY_ANNOTATION] = "true"
        _LOGGER.info("Updating required package %s", existing.resource_id)
        self.store.update(existing)

    def handle_adapter_results(self, results: list[AdapterResult]) -> bool:
        """Surface the first failed or waiting result, return true if all are ready."""
        first_failed = next((result for result in results if result.is_failed), None)
        first_waiting = next((result for result in results if result.is_waiting), None)
        if first_failed is not None:
            self.set_failed(Reason.INSTALLATION_FAILED, first_failed.message)
            return False
        if first_waiting is not None:
            self.set_unknown(Reason.PENDING, first_waiting.message)
            return False
        return True

    def after_success(self, info: PackageInfo, results: list[AdapterResult]) -> None:
        reason = Reason.UP_TO_DATE
        message = "PackageInfo has nothing to apply (no helm or kustomize manifest present)"
        if results:
            reason = Reason.INSTALLATION_SUCCEEDED
            message = "\n".join(result.message for result in results)
        self.set_should_update(conditions.set_ready(self.conditions, reason, message))
        self.set_should_update(self.pkg.status.version != info.status.version)
        self.pkg.status.version = info.status.version
        self.is_success = True
        _LOGGER.info("Package %s is ready: %s", self.pkg.resource_id, message)

    def finalize(self) -> ReconcileResult:
        errors = self.actual_finalize()
        return always(self.config, MultiError(errors) if errors else None)

    def finalize_no_requeue(self) -> ReconcileResult:
        errors = self.actual_finalize()
        return on_error(self.config, MultiError(errors) if errors else None)

    def finalize_with_error(self, err: Exception) -> ReconcileResult:
        errors = [err, *self.actual_finalize()]
        return always(self.config, MultiError(errors) if len(errors) > 1 else err)

    def actual_finalize(self) -> list[Exception]:
        """Record owned objects, prune after success and write the package back."""
        status = self.pkg.status
        self.set_should_update(add_refs(status.owned_resources, *self.current_owned_resources))
        self.set_should_update(add_refs(status.owned_packages, *self.current_owned_packages))

        errors: list[Exception] = []
        if self.is_success:
            if cleanup_errors := self.cleanup():
                error = MultiError(cleanup_errors)
                self.set_failed(Reason.INSTALLATION_FAILED, f"cleanup failed: {error}")
                errors.extend(cleanup_errors)
            _LOGGER.debug("Cleanup of %s done", self.pkg.resource_id)

        try:
            self.write()
        except KpkgException as err:
            _LOGGER.warning("Package update of %s failed: %s", self.pkg.resource_id, err)
            errors.append(err)
        return errors

    def write(self) -> None:
        if self.should_update_resource:
            updated = self.store.update(self.pkg)
            _LOGGER.info("Package %s updated", self.pkg.resource_id)
            if self.pkg.deleting and not self.pkg.metadata.finalizers:
                # The store removed the package with its last finalizer
                return
            self.pkg.metadata.resource_version = updated.metadata.resource_version
        if self.should_update_status:
            self.store.update_status(self.pkg)
            _LOGGER.info("Package status of %s updated", self.pkg.resource_id)

    def cleanup(self) -> list[Exception]:
        return [
            *self.prune_owned_resources(),
            *self.prune_owned_package_infos(prune_all=False),
            *self.prune_owned_packages(prune_all=False),
        ]

    def prune_owned_resources(self) -> list[Exception]:
        """Delete managed objects that were not applied in this pass."""
        errors: list[Exception] = []
        owned = list(self.pkg.status.owned_resources)
        for ref in self.pkg.status.owned_resources:
            if any(ref.refers_to_same(new_ref) for new_ref in self.current_owned_resources):
                continue
            obj = self.store.get_object(ref.resource_id, AnyObject)  # type: ignore[arg-type]
            if obj is None:
                remove_ref(owned, ref)
                self.set_should_update(True)
            elif is_managed(obj.metadata):
                try:
                    self.store.delete(ref.resource_id)
                except ObjectNotFoundError:
                    pass
                except KpkgException as err:
                    errors.append(KpkgException(f"could not prune resource: {err}"))
                    continue
                _LOGGER.debug("Pruned resource %s", ref)
                self.set_should_update(remove_ref(owned, ref))
            else:
                _LOGGER.debug("Skipped pruning unmanaged resource %s", ref)
                self.set_should_update(remove_ref(owned, ref))
        self.pkg.status.owned_resources = owned
        return errors

    def prune_owned_package_infos(self, prune_all: bool) -> list[Exception]:
        """Delete package infos no longer used by this or any other package."""
        errors: list[Exception] = []
        current_name = package_info_name(self.pkg)
        others = self._other_packages()
        for ref in list(self.pkg.status.owned_package_infos):
            if not prune_all and ref.name == current_name:
                continue
            still_used = any(
                other_ref.name == ref.name
                for other in others
                for other_ref in other.status.owned_package_infos
            )
            if not still_used:
                _LOGGER.debug("Deleting old PackageInfo %s", ref.name)
                try:
                    self.store.delete(ref.resource_id)
                except ObjectNotFoundError:
                    pass
                except KpkgException as err:
                    errors.append(err)
                    continue
            remove_ref(self.pkg.status.owned_package_infos, ref)
            self.set_should_update(True)
        return errors

    def prune_owned_packages(self, prune_all: bool) -> list[Exception]:
        """Delete required packages that no other package requires anymore.

        Only packages that were installed as a dependency are deleted.
        """
        errors: list[Exception] = []
        owned = list(self.pkg.status.owned_packages)
        others = [other for other in self._other_packages() if not other.deleting]
        for ref in self.pkg.status.owned_packages:
            if not prune_all and any(
                ref.refers_to_same(new_ref) for new_ref in self.current_owned_packages
            ):
                continue
            still_used = any(
                other_ref.refers_to_same(ref)
                for other in others
                for other_ref in other.status.owned_packages
            )
            if not still_used:
                cls = Package if ref.kind == PACKAGE_KIND else ClusterPackage
                required_pkg = self.store.get_object(ref.resource_id, cls)
                if required_pkg is not None and is_installed_as_dependency(required_pkg):
                    try:
                        self.store.delete(ref.resource_id, DeletionPropagation.FOREGROUND)
                    except ObjectNotFoundError:
                        pass
                    except KpkgException as err:
                        errors.append(KpkgException(f"could not prune package: {err}"))
                        continue
                    _LOGGER.debug("Pruned package %s", ref)
            self.set_should_update(remove_ref(owned, ref))
        self.pkg.status.owned_packages = owned
        return errors

    def _other_packages(self) -> list[BasePackage]:
        packages: list[BasePackage] = [
            *self.store.list_objects(ClusterPackage),
            *self.store.list_objects(Package),
        ]
        return [pkg for pkg in packages if pkg.resource_id != self.pkg.resource_id]
