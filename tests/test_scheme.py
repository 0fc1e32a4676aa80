"""Tests for the scheme registry."""

import pytest

from capm3_manager.errors import ManagerError, SchemeConflict
from capm3_manager.scheme import (
    BUILTIN_DEFINITIONS,
    ResourceDefinition,
    SchemeRegistry,
    populate_scheme,
)


class TestPopulateScheme:
    """Test populating the registry."""

    def test_populate_twice_is_idempotent(self):
        once = populate_scheme(SchemeRegistry())
        twice = populate_scheme(populate_scheme(SchemeRegistry()))

        assert twice.kinds() == once.kinds()
        assert len(once) == len(set(d.key for d in BUILTIN_DEFINITIONS))

    def test_populate_after_freeze(self):
        registry = populate_scheme(SchemeRegistry())
        registry.freeze()
        kinds = registry.kinds()

        populate_scheme(registry)
        assert registry.kinds() == kinds

    def test_contains_metal3_kinds(self, scheme):
        machine = scheme.lookup("infrastructure.cluster.x-k8s.io/v1beta1", "Metal3Machine")
        assert machine.plural == "metal3machines"
        assert scheme.lookup("infrastructure.cluster.x-k8s.io/v1alpha5", "Metal3Data").plural == "metal3datas"
        assert scheme.lookup("metal3.io/v1alpha1", "BareMetalHost") is not None


class TestSchemeRegistry:
    """Test registry write-once behaviour."""

    def test_conflicting_definition_raises(self):
        registry = SchemeRegistry()
        registry.add(ResourceDefinition("example.io", "v1", "Widget", "widgets"))
        with pytest.raises(SchemeConflict):
            registry.add(ResourceDefinition("example.io", "v1", "Widget", "widgetz"))

    def test_frozen_rejects_new_kind(self, scheme):
        with pytest.raises(ManagerError):
            scheme.add(ResourceDefinition("example.io", "v1", "Widget", "widgets"))

    def test_core_group_lookup(self, scheme):
        secret = scheme.lookup("v1", "Secret")
        assert secret.group == ""
        assert secret.api_version == "v1"

    def test_cluster_scoped_kind(self, scheme):
        assert scheme.lookup("v1", "Node").namespaced is False

    def test_decode(self, scheme):
        obj = {"apiVersion": "cluster.x-k8s.io/v1beta1", "kind": "Cluster", "metadata": {"name": "c"}}
        assert scheme.decode(obj).plural == "clusters"

    def test_decode_unknown_kind(self, scheme):
        with pytest.raises(ManagerError):
            scheme.decode({"apiVersion": "example.io/v1", "kind": "Widget"})
