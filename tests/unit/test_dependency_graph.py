"""Tests for the dependency graph."""
import pytest

from powerchain.core.dependency_graph import (
    DependencyGraph,
    DependencyGraphService,
    Edge,
    LinkNotFoundError,
    LinkValidationError,
    StructuralLinkProtected,
)


def logical(parent, child):
    return Edge(parent, child, False)


def structural(parent, child):
    return Edge(parent, child, True)


class TestUpstreamChain:
    """Test DependencyGraph.upstream_chain."""

    def test_chain_includes_host_and_its_dependencies(self):
        """vm1 on pve, pve needs nas: nearest dependency first."""
        graph = DependencyGraph([logical("nas", "pve"), structural("pve", "vm1")])

        assert graph.upstream_chain("vm1") == ["pve", "nas"]

    def test_reversed_chain_is_a_start_order(self):
        """Every node comes after all of its own dependencies."""
        graph = DependencyGraph([
            logical("nas", "db"),
            logical("db", "app"),
            logical("nas", "app"),
            logical("switch", "nas"),
        ])

        order = list(reversed(graph.upstream_chain("app")))

        assert order.index("switch") < order.index("nas")
        assert order.index("nas") < order.index("db")
        assert set(order) == {"switch", "nas", "db"}

    def test_diamond_appears_once(self):
        graph = DependencyGraph([
            logical("nas", "a"),
            logical("nas", "b"),
            logical("a", "app"),
            logical("b", "app"),
        ])

        chain = graph.upstream_chain("app")

        assert chain.count("nas") == 1
        assert len(chain) == 3

    def test_isolated_node_has_empty_chain(self):
        assert DependencyGraph([]).upstream_chain("lonely") == []

    def test_siblings_are_not_part_of_the_chain(self):
        graph = DependencyGraph([structural("pve", "vm1"), structural("pve", "vm2")])

        assert graph.upstream_chain("vm1") == ["pve"]


class TestCycleDetection:
    """Test DependencyGraph.would_create_cycle."""

    def test_back_edge_is_a_cycle(self):
        graph = DependencyGraph([logical("a", "b"), logical("b", "c")])

        assert graph.would_create_cycle("c", "a") is True

    def test_host_cannot_depend_on_its_guest(self):
        """Structural edges count when looking for cycles."""
        graph = DependencyGraph([structural("pve", "vm1")])

        assert graph.would_create_cycle("vm1", "pve") is True

    def test_parallel_edge_is_not_a_cycle(self):
        graph = DependencyGraph([logical("a", "b"), logical("b", "c")])

        assert graph.would_create_cycle("a", "c") is False


class TestDescendantsAndDependents:
    """Test downstream traversals."""

    def test_structural_descendants_ancestor_first(self):
        graph = DependencyGraph([
            structural("pve", "vm1"),
            structural("vm1", "ct1"),
            logical("pve", "app"),
        ])

        assert graph.structural_descendants("pve") == ["vm1", "ct1"]

    def test_structural_children_are_direct_only(self):
        graph = DependencyGraph([structural("pve", "vm1"), structural("vm1", "ct1")])

        assert graph.structural_children("pve") == ["vm1"]

    def test_upstream_dependencies_are_logical_only(self):
        graph = DependencyGraph([structural("pve", "vm1"), logical("nas", "vm1")])

        assert graph.upstream_dependencies("vm1") == ["nas"]

    def test_downstream_logical_dependents_are_transitive(self):
        graph = DependencyGraph([
            logical("nas", "db"),
            logical("db", "app"),
            structural("nas", "ct1"),
        ])

        assert graph.downstream_logical_dependents("nas") == ["db", "app"]

    def test_shared_dependency_needs_two_direct_logical_children(self):
        graph = DependencyGraph([
            logical("nas", "a"),
            logical("nas", "b"),
            logical("db", "c"),
            structural("db", "vm"),
        ])

        assert graph.is_shared_dependency("nas") is True
        assert graph.is_shared_dependency("db") is False


class TestDependencyGraphService:
    """Test link validation and mutations against the database."""

    @pytest.mark.asyncio
    async def test_create_logical_link(self, db, add_node):
        nas = await add_node("nas")
        app = await add_node("app")

        link = await DependencyGraphService.create_link(db, nas.id, app.id)

        assert link.id is not None
        assert link.is_structural is False
        assert link.created_at is not None

    @pytest.mark.asyncio
    async def test_self_reference_rejected(self, db, add_node):
        nas = await add_node("nas")

        with pytest.raises(LinkValidationError) as exc:
            await DependencyGraphService.validate_link(db, nas.id, nas.id)
        assert exc.value.code == LinkValidationError.SELF_REFERENCE

    @pytest.mark.asyncio
    async def test_unknown_node_rejected(self, db, add_node):
        nas = await add_node("nas")

        with pytest.raises(LinkValidationError) as exc:
            await DependencyGraphService.validate_link(db, nas.id, "missing")
        assert exc.value.code == LinkValidationError.NODE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, db, add_node, add_link):
        nas = await add_node("nas")
        app = await add_node("app")
        await add_link(nas, app)

        with pytest.raises(LinkValidationError) as exc:
            await DependencyGraphService.validate_link(db, nas.id, app.id)
        assert exc.value.code == LinkValidationError.DUPLICATE_LINK

    @pytest.mark.asyncio
    async def test_cycle_rejected(self, db, add_node, add_link):
        a = await add_node("a")
        b = await add_node("b")
        c = await add_node("c")
        await add_link(a, b)
        await add_link(b, c)

        with pytest.raises(LinkValidationError) as exc:
            await DependencyGraphService.create_link(db, c.id, a.id)
        assert exc.value.code == LinkValidationError.CYCLE_DETECTED

    @pytest.mark.asyncio
    async def test_delete_logical_link(self, db, add_node, add_link):
        nas = await add_node("nas")
        app = await add_node("app")
        link = await add_link(nas, app)

        await DependencyGraphService.delete_link(db, link.id)

        assert await DependencyGraphService.list_links(db) == []

    @pytest.mark.asyncio
    async def test_structural_link_cannot_be_deleted(self, db, add_node):
        pve = await add_node("pve", kind="hypervisor_host")
        await add_node("vm1", kind="vm", parent=pve)
        (link,) = await DependencyGraphService.list_links(db)

        with pytest.raises(StructuralLinkProtected):
            await DependencyGraphService.delete_link(db, link.id)

    @pytest.mark.asyncio
    async def test_delete_unknown_link(self, db):
        with pytest.raises(LinkNotFoundError):
            await DependencyGraphService.delete_link(db, "missing")

    @pytest.mark.asyncio
    async def test_list_links_filtered_by_node(self, db, add_node, add_link):
        nas = await add_node("nas")
        app = await add_node("app")
        other = await add_node("other")
        await add_link(nas, app)
        await add_link(other, nas)
        await add_link(other, app)

        links = await DependencyGraphService.list_links(db, node_id=nas.id)

        assert len(links) == 2

    @pytest.mark.asyncio
    async def test_upstream_chain_returns_nodes_in_order(self, db, add_node, add_link):
        nas = await add_node("nas")
        pve = await add_node("pve", kind="hypervisor_host")
        vm1 = await add_node("vm1", kind="vm", parent=pve)
        await add_link(nas, pve)

        chain = await DependencyGraphService.get_upstream_chain(db, vm1.id)

        assert [n.name for n in chain] == ["pve", "nas"]

    @pytest.mark.asyncio
    async def test_is_shared_dependency(self, db, add_node, add_link):
        nas = await add_node("nas")
        await add_link(nas, await add_node("a"))
        assert await DependencyGraphService.is_shared_dependency(db, nas.id) is False

        await add_link(nas, await add_node("b"))
        assert await DependencyGraphService.is_shared_dependency(db, nas.id) is True
