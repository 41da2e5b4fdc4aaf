"""Catalog apps: manifests, lifecycle handlers and the handler registry.

The embedded catalog lives in ``catalog/*.yml``; see :mod:`zen.software.manifest`
for the schema and :mod:`zen.software.registry` for lookup by ``(app, verb)``.
"""
