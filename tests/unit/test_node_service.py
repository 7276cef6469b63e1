"""Tests for the node registry."""
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import select

from powerchain.connectors.base import ConnectionTestResult, ConnectorError, DiscoveredResource
from powerchain.core.dependency_graph import DependencyGraphService, NodeNotFoundError
from powerchain.core.node_service import NodeService, NodeValidationError
from powerchain.db.models import Cascade, DependencyLink, InactivityRule, Node
from powerchain.utils.crypto import decrypt_json, decrypt_value


class TestRegisterNode:
    """Test NodeService.register_node."""

    @pytest.mark.asyncio
    async def test_credentials_are_encrypted(self, db):
        """Passwords and API bundles are stored encrypted."""
        node = await NodeService.register_node(
            db,
            name="pve",
            kind="hypervisor_host",
            ip_address="192.168.1.30",
            mac_address="AA-BB-CC-DD-EE-FF",
            ssh_user="root",
            ssh_password="pw",
            api_url="https://pve.local:8006",
            api_credentials={"token_id": "root@pam!pc", "token_secret": "s3cret"},
        )

        assert node.mac_address == "aa:bb:cc:dd:ee:ff"
        assert node.ssh_credentials_encrypted != "pw"
        assert decrypt_value(node.ssh_credentials_encrypted) == "pw"
        assert decrypt_json(node.api_credentials_encrypted)["token_secret"] == "s3cret"
        assert node.status == "unknown"
        assert node.created_at is not None

    @pytest.mark.asyncio
    async def test_guest_gets_structural_link(self, db):
        """Registering a guest links it to its host."""
        pve = await NodeService.register_node(db, name="pve", kind="hypervisor_host")
        vm = await NodeService.register_node(
            db, name="vm1", kind="vm", parent_id=pve.id, platform_ref={"node": "pve1", "vmid": 101}
        )

        (link,) = await DependencyGraphService.list_links(db)
        assert link.parent_id == pve.id
        assert link.child_id == vm.id
        assert link.is_structural is True

    @pytest.mark.asyncio
    async def test_guest_needs_parent(self, db):
        """VMs and containers cannot float."""
        with pytest.raises(NodeValidationError):
            await NodeService.register_node(db, name="vm1", kind="vm")

    @pytest.mark.asyncio
    async def test_parent_must_be_host(self, db):
        """Only hypervisor and container hosts can own guests."""
        nas = await NodeService.register_node(db, name="nas", kind="physical")

        with pytest.raises(NodeValidationError):
            await NodeService.register_node(db, name="vm1", kind="vm", parent_id=nas.id)

    @pytest.mark.asyncio
    async def test_physical_cannot_have_parent(self, db):
        """Physical machines are never hosted."""
        pve = await NodeService.register_node(db, name="pve", kind="hypervisor_host")

        with pytest.raises(NodeValidationError):
            await NodeService.register_node(db, name="nas", kind="physical", parent_id=pve.id)

    @pytest.mark.asyncio
    async def test_unknown_parent(self, db):
        """A missing parent is reported as not found."""
        with pytest.raises(NodeNotFoundError):
            await NodeService.register_node(db, name="vm1", kind="vm", parent_id="missing")

    @pytest.mark.asyncio
    async def test_unknown_kind(self, db):
        """Kinds outside the vocabulary are rejected."""
        with pytest.raises(NodeValidationError):
            await NodeService.register_node(db, name="toaster", kind="appliance")

    @pytest.mark.asyncio
    async def test_invalid_mac(self, db):
        """Malformed MACs are rejected before anything is written."""
        with pytest.raises(NodeValidationError):
            await NodeService.register_node(db, name="nas", kind="physical", mac_address="nope")


class TestImport:
    """Test importing discovered resources."""

    @pytest.mark.asyncio
    async def test_import_skips_known_refs(self, db):
        """Re-importing the same listing creates nothing new."""
        pve = await NodeService.register_node(db, name="pve", kind="hypervisor_host")
        resources = [
            DiscoveredResource("web", "vm", "running", {"node": "pve1", "vmid": 101, "type": "qemu"}),
            DiscoveredResource("dns", "container", "stopped", {"node": "pve1", "vmid": 200, "type": "lxc"}),
        ]

        first = await NodeService.import_discovered(db, pve.id, resources)
        second = await NodeService.import_discovered(db, pve.id, resources)

        assert [n.name for n in first] == ["web", "dns"]
        assert [n.status for n in first] == ["running", "stopped"]
        assert second == []
        assert len(await NodeService.list_nodes(db, parent_id=pve.id)) == 2

    @pytest.mark.asyncio
    async def test_discover_uses_platform_connector(self, db):
        """Discovery lists resources through the host's API connector."""
        pve = await NodeService.register_node(
            db, name="pve", kind="hypervisor_host", api_url="https://pve.local:8006"
        )
        resources = [DiscoveredResource("web", "vm", "running", {"vmid": 101})]

        with patch(
            "powerchain.connectors.proxmox.ProxmoxConnector.list_resources",
            new=AsyncMock(return_value=resources),
        ):
            assert await NodeService.discover_resources(db, pve.id) == resources

    @pytest.mark.asyncio
    async def test_discover_without_api(self, db):
        """Hosts without an API URL cannot be discovered."""
        pve = await NodeService.register_node(db, name="pve", kind="hypervisor_host")

        with pytest.raises(ConnectorError) as exc:
            await NodeService.discover_resources(db, pve.id)
        assert exc.value.code == "NO_API_URL"


class TestDeleteNode:
    """Test NodeService.delete_node."""

    @pytest.mark.asyncio
    async def test_host_deleted_with_guests(self, db, add_node, add_link):
        """Hosted nodes, links, rules and cascades go with the host."""
        nas = await add_node("nas")
        pve = await add_node("pve", kind="hypervisor_host")
        vm = await add_node("vm1", kind="vm", parent=pve)
        await add_link(nas, pve)
        db.add(InactivityRule(node_id=vm.id, monitoring_criteria={}))
        db.add(Cascade(node_id=pve.id, type="start", status="completed"))
        await db.commit()

        deleted = await NodeService.delete_node(db, pve.id)
        await db.commit()

        assert deleted == [vm.id, pve.id]
        remaining = (await db.execute(select(Node.name))).scalars().all()
        assert remaining == ["nas"]
        assert (await db.execute(select(DependencyLink))).scalars().all() == []
        assert (await db.execute(select(InactivityRule))).scalars().all() == []
        assert (await db.execute(select(Cascade))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_unknown_node(self, db):
        """Deleting a missing node raises."""
        with pytest.raises(NodeNotFoundError):
            await NodeService.delete_node(db, "missing")


class TestConnectionTest:
    """Test NodeService.test_connection."""

    @pytest.mark.asyncio
    async def test_capability_error_is_a_failed_result(self, db, add_node):
        """A physical node without MAC reports why it cannot be tested."""
        nas = await add_node("nas")

        result = await NodeService.test_connection(db, nas.id)

        assert result.success is False
        assert "MAC address required" in result.message

    @pytest.mark.asyncio
    async def test_unconfigured_node(self, db, add_node):
        """Pass-through nodes have nothing to test."""
        pve = await add_node("pve", kind="hypervisor_host")

        result = await NodeService.test_connection(db, pve.id)

        assert result.success is False
        assert "no connector configured" in result.message

    @pytest.mark.asyncio
    async def test_host_api_tested(self, db, add_node):
        """Hosts with an API URL are tested against their platform API."""
        docker = await add_node("docker", kind="container_host", api_url="http://docker.local:2375")

        with patch(
            "powerchain.connectors.docker.DockerConnector.test_connection",
            new=AsyncMock(return_value=ConnectionTestResult(True, "Connected")),
        ):
            result = await NodeService.test_connection(db, docker.id)

        assert result.success is True
