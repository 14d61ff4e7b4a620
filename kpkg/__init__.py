"""kpkg is a kubernetes package manager reconciliation engine.

Packages are declared with `Package` and `ClusterPackage` objects. A control
loop resolves their manifests from a package repository, validates their
dependencies, resolves configuration values into patches and hands the result
to manifest adapters that apply the package contents.
"""
