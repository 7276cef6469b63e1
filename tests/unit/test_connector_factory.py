"""Tests for connector resolution."""
import pytest

from powerchain.connectors.base import ConnectorError
from powerchain.connectors.docker import DockerConnector
from powerchain.connectors.factory import (
    build_connector,
    build_platform_connector,
    resolve_connector,
)
from powerchain.connectors.proxmox import ProxmoxConnector
from powerchain.connectors.status_only import StatusOnlyConnector
from powerchain.connectors.wol_ssh import WolSshConnector
from powerchain.db.models import Node
from powerchain.utils.crypto import encrypt_json, encrypt_value


def make_node(name="node", kind="physical", **kwargs):
    return Node(id=f"{name}-id", name=name, kind=kind, **kwargs)


class TestPhysicalNodes:
    """Test physical node mapping."""

    def test_wol_ssh_with_decrypted_password(self):
        node = make_node(
            mac_address="aa:bb:cc:dd:ee:ff",
            ip_address="192.168.1.20",
            ssh_user="admin",
            ssh_credentials_encrypted=encrypt_value("pw"),
        )

        connector = build_connector(node)

        assert isinstance(connector, WolSshConnector)
        assert connector.host == "192.168.1.20"
        assert connector.ssh_user == "admin"
        assert connector.ssh_password == "pw"
        assert connector.mac_address == "aa:bb:cc:dd:ee:ff"

    def test_default_ssh_user(self):
        connector = build_connector(make_node(mac_address="aa:bb:cc:dd:ee:ff"))

        assert connector.ssh_user == "root"
        assert connector.ssh_password is None

    def test_mac_required(self):
        with pytest.raises(ConnectorError) as exc:
            build_connector(make_node(ip_address="192.168.1.20"))
        assert exc.value.code == "NO_MAC_ADDRESS"

    def test_undecryptable_password(self):
        node = make_node(
            mac_address="aa:bb:cc:dd:ee:ff", ssh_credentials_encrypted="not-a-token"
        )

        with pytest.raises(ConnectorError) as exc:
            build_connector(node)
        assert exc.value.code == "DECRYPT_FAILED"


class TestGuests:
    """Test VM and container mapping through the parent host."""

    def test_vm_on_hypervisor(self):
        pve = make_node(
            "pve",
            kind="hypervisor_host",
            api_url="https://pve.local:8006",
            api_credentials_encrypted=encrypt_json(
                {"token_id": "root@pam!pc", "token_secret": "s3cret"}
            ),
        )
        vm = make_node("vm1", kind="vm", platform_ref={"node": "pve1", "vmid": 101})

        connector = build_connector(vm, pve)

        assert isinstance(connector, ProxmoxConnector)
        assert connector.platform_ref == {"node": "pve1", "vmid": 101}
        assert connector.client.token_id == "root@pam!pc"
        assert connector.client.token_secret == "s3cret"
        assert connector.client.verify_ssl is False

    def test_container_on_docker_host(self):
        docker = make_node(
            "docker",
            kind="container_host",
            api_url="http://docker.local:2375",
            capabilities={"api_version": "v1.43"},
        )
        ct = make_node("ct1", kind="container", platform_ref={"container_id": "abc"})

        connector = build_connector(ct, docker)

        assert isinstance(connector, DockerConnector)
        assert connector.client.base_url == "http://docker.local:2375/v1.43"

    def test_guest_without_parent_is_pass_through(self):
        assert build_connector(make_node("vm1", kind="vm")) is None

    def test_guest_of_non_host_is_pass_through(self):
        parent = make_node("nas", mac_address="aa:bb:cc:dd:ee:ff")

        assert build_connector(make_node("vm1", kind="vm"), parent) is None

    def test_host_without_api_url(self):
        pve = make_node("pve", kind="hypervisor_host")

        with pytest.raises(ConnectorError) as exc:
            build_connector(make_node("vm1", kind="vm"), pve)
        assert exc.value.code == "NO_API_URL"


class TestHosts:
    """Test hypervisor and container host mapping."""

    def test_host_with_ssh(self):
        host = make_node(
            "pve",
            kind="hypervisor_host",
            ip_address="192.168.1.30",
            ssh_credentials_encrypted=encrypt_value("pw"),
            api_url="https://pve.local:8006",
        )

        assert isinstance(build_connector(host), WolSshConnector)

    def test_host_with_api_only(self):
        host = make_node("docker", kind="container_host", api_url="http://docker.local:2375")

        connector = build_connector(host)

        assert isinstance(connector, StatusOnlyConnector)
        assert connector.ping_url == "http://docker.local:2375/_ping"

    def test_unconfigured_host(self):
        assert build_connector(make_node("pve", kind="hypervisor_host")) is None

    def test_platform_connector_rejects_non_host(self):
        with pytest.raises(ConnectorError) as exc:
            build_platform_connector(make_node("nas"))
        assert exc.value.code == "NO_API_URL"


class TestResolveConnector:
    """Test loading nodes for resolution."""

    @pytest.mark.asyncio
    async def test_unknown_node(self, db):
        with pytest.raises(ConnectorError) as exc:
            await resolve_connector(db, "missing")
        assert exc.value.code == "NODE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_loads_parent(self, db, add_node):
        docker = await add_node(
            "docker", kind="container_host", status="online", api_url="http://docker.local:2375"
        )
        ct = await add_node(
            "ct1", kind="container", parent=docker, platform_ref={"container_id": "abc"}
        )

        connector = await resolve_connector(db, ct.id)

        assert isinstance(connector, DockerConnector)
        assert connector.platform_ref == {"container_id": "abc"}
