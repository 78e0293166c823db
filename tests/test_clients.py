"""
Backend Adapter Tests

Inventory, power, boot, boot-parameter, configuration, image and secret-store
adapters against a mocked ServiceClient, plus client wiring from configuration.
"""
import base64
from unittest.mock import MagicMock

import pytest
import requests

from csm_admin.client import factory
from csm_admin.client.bos import BootClient, BootOperation
from csm_admin.client.bss import BootParameters, BootParametersClient
from csm_admin.client.cfs import ConfigurationClient
from csm_admin.client.credentials import KeycloakTokenProvider, SecretToken, StaticTokenProvider
from csm_admin.client.hsm import InventoryClient
from csm_admin.client.ims import ImageClient
from csm_admin.client.pcs import PowerClient, PowerOperation
from csm_admin.client.storage import HttpArtifactFetcher, fetch_artifact
from csm_admin.client.transport import ApiResponse
from csm_admin.client.vault import VaultClient
from csm_admin.config import ClientConfig, ConfigError
from csm_admin.errors import MalformedResponse, RequestRejected, TransportError
from csm_admin.nodeset import NodeSet
from csm_admin.xname import parse

NODES = NodeSet.from_hostlist("x1000c0s0b0n[0-1]")


def service(backend="test"):
    client = MagicMock()
    client.backend = backend
    client.url_for.side_effect = lambda path: f"https://api.example.com/{backend}{path}"
    return client


def not_found():
    return RequestRejected("test", "https://api.example.com/x", 404)


def session_record(name, status, succeeded="none", limit="x1000c0s0b0n0,x1000c0s0b0n1"):
    return {
        "name": name,
        "configuration": {"name": "compute-23.7", "limit": ""},
        "ansible": {"limit": limit, "verbosity": 0},
        "target": {"definition": "dynamic", "groups": []},
        "status": {"session": {"status": status, "succeeded": succeeded}},
    }


class TestInventoryClient:
    def setup_method(self):
        self.service = service("hsm")
        self.inventory = InventoryClient(self.service)

    def test_list_nodes(self):
        self.service.get.return_value = {
            "Components": [
                {"ID": "x1000c0s0b0n0", "Type": "Node", "State": "Ready", "NID": 1, "Role": "Compute"},
                {"ID": "x1000c0s0b0n1", "Type": "Node", "State": "Off", "NID": 2},
                {"ID": "not-an-xname"},
                {"ID": "x1000c0s0b0", "Type": "NodeBMC"},
            ]
        }
        nodes = self.inventory.list_nodes(role="Compute")
        assert [str(n.xname) for n in nodes] == ["x1000c0s0b0n0", "x1000c0s0b0n1"]
        assert nodes[0].nid == 1
        assert nodes[0].role == "Compute"
        args, kwargs = self.service.get.call_args
        assert args == ("/State/Components",)
        assert kwargs["params"] == {"type": "Node", "role": "Compute"}

    def test_list_nodes_under_missing_container(self):
        self.service.get.side_effect = not_found()
        assert self.inventory.list_nodes(parse("x9000c0")) == []
        assert self.service.get.call_args.args == ("/State/Components/Query/x9000c0",)

    def test_list_nodes_malformed(self):
        self.service.get.return_value = {"Components": "nope"}
        with pytest.raises(MalformedResponse):
            self.inventory.list_nodes()

    def test_get_group(self):
        self.service.get.return_value = {
            "label": "compute",
            "members": {"ids": ["x1000c0s0b0n0", "bogus", "x1000c0s0b0n1"]},
            "exclusiveGroup": "role",
        }
        group = self.inventory.get_group("compute")
        assert group.label == "compute"
        assert [str(m) for m in group.members] == ["x1000c0s0b0n0", "x1000c0s0b0n1"]
        assert group.exclusive_group == "role"

    def test_missing_group_and_partition(self):
        self.service.get.side_effect = not_found()
        assert self.inventory.get_group("nope") is None
        assert self.inventory.get_partition("p9") is None

    def test_other_rejections_propagate(self):
        self.service.get.side_effect = RequestRejected("hsm", "https://api.example.com/x", 400)
        with pytest.raises(RequestRejected):
            self.inventory.get_group("compute")

    def test_nid_map(self):
        self.service.get.return_value = {
            "Components": [{"ID": "x1000c0s0b0n0", "NID": 7}, {"ID": "x1000c0s0b0n1"}]
        }
        assert self.inventory.nid_map() == {7: parse("x1000c0s0b0n0")}

    def test_membership_changes(self):
        node = parse("x1000c0s0b0n0")
        self.inventory.add_member("maintenance", node)
        self.inventory.remove_member("maintenance", node)
        assert self.service.post.call_args.kwargs["json"] == {"id": "x1000c0s0b0n0"}
        assert self.service.delete.call_args.args == ("/groups/maintenance/members/x1000c0s0b0n0",)


class TestPowerClient:
    def setup_method(self):
        self.service = service("pcs")
        self.power = PowerClient(self.service)

    def test_operation_names(self):
        assert PowerOperation.from_str("soft-off") == PowerOperation.SOFT_OFF
        assert PowerOperation.from_str(" Force-Off ") == PowerOperation.FORCE_OFF
        with pytest.raises(ValueError):
            PowerOperation.from_str("explode")

    def test_create_transition(self):
        self.service.post.return_value = {"transitionID": "t-1"}
        assert self.power.create_transition(PowerOperation.OFF, NODES, task_deadline_minutes=3) == "t-1"
        body = self.service.post.call_args.kwargs["json"]
        assert body == {
            "operation": "Off",
            "location": [{"xname": "x1000c0s0b0n0"}, {"xname": "x1000c0s0b0n1"}],
            "taskDeadlineMinutes": 3,
        }

    def test_create_transition_without_id(self):
        self.service.post.return_value = {"ok": True}
        with pytest.raises(MalformedResponse):
            self.power.create_transition(PowerOperation.ON, NODES)

    def test_get_transition(self):
        self.service.get.return_value = {
            "transitionID": "t-1",
            "transitionStatus": "In-Progress",
            "operation": "Off",
            "taskCounts": {"total": 2, "succeeded": 1},
            "tasks": [
                {"xname": "x1000c0s0b0n0", "taskStatus": "Succeeded"},
                {"xname": "x1000c0s0b0n1", "taskStatus": "failed", "error": "BMC unreachable"},
            ],
        }
        transition = self.power.get_transition("t-1")
        assert transition.status == "in-progress"
        assert not transition.is_complete
        assert [t.status for t in transition.tasks] == ["succeeded", "failed"]
        assert transition.tasks[1].error == "BMC unreachable"

    def test_get_transition_malformed(self):
        self.service.get.return_value = ["not", "a", "record"]
        with pytest.raises(MalformedResponse):
            self.power.get_transition("t-1")

    def test_power_status(self):
        self.service.get.return_value = {
            "status": [{"xname": "x1000c0s0b0n0", "powerState": "on"}, {"xname": "x1000c0s0b0n1"}]
        }
        assert self.power.power_status(NODES) == {"x1000c0s0b0n0": "on", "x1000c0s0b0n1": "undefined"}


class TestBootClient:
    def setup_method(self):
        self.service = service("bos")
        self.boot = BootClient(self.service)

    def test_create_session(self):
        self.service.post.return_value = {
            "name": "s-1",
            "operation": "reboot",
            "template_name": "compute",
            "status": {"status": "pending"},
        }
        session = self.boot.create_session("compute", BootOperation.REBOOT, NODES)
        assert session.name == "s-1"
        assert session.status == "pending"
        body = self.service.post.call_args.kwargs["json"]
        assert body["limit"] == "x1000c0s0b0n0,x1000c0s0b0n1"
        assert body["operation"] == "reboot"

    def test_list_components(self):
        self.service.get.return_value = [
            {"id": "x1000c0s0b0n0", "session": "s-1", "status": {"phase": "powering_on", "status": "in_progress"}},
            {"id": "x1000c0s0b0n1", "status": {"status": "stable", "status_override": "on_hold"}},
            {"session": "s-1"},
        ]
        components = self.boot.list_components(NODES)
        assert [c.id for c in components] == ["x1000c0s0b0n0", "x1000c0s0b0n1"]
        assert components[0].phase == "powering_on"
        assert components[1].status == "on_hold"

    def test_missing_template(self):
        self.service.get.side_effect = not_found()
        assert self.boot.get_template("absent") is None


class TestConfigurationClient:
    def setup_method(self):
        self.service = service("cfs")
        self.configuration = ConfigurationClient(self.service)

    def test_set_desired_config(self):
        self.service.patch.return_value = {"component_ids": ["x1000c0s0b0n0", "x1000c0s0b0n1"]}
        patched = self.configuration.set_desired_config(NODES, "compute-23.7", clear_state=True)
        assert patched == ["x1000c0s0b0n0", "x1000c0s0b0n1"]
        body = self.service.patch.call_args.kwargs["json"]
        assert body["patch"] == {"desired_config": "compute-23.7", "enabled": True, "error_count": 0, "state": []}
        assert body["filters"] == {"ids": "x1000c0s0b0n0,x1000c0s0b0n1"}

    def test_stop_retrying_uses_retry_policy(self):
        self.service.get.return_value = {"default_batcher_retry_policy": 5}
        assert self.configuration.stop_retrying(NODES) == 5
        assert self.service.patch.call_args.kwargs["json"]["patch"] == {"error_count": 5}

    def test_list_components_paged_shape(self):
        self.service.get.return_value = {
            "components": [{"id": "x1000c0s0b0n0", "configuration_status": "Configured", "error_count": 1}]
        }
        component = self.configuration.list_components(NODES)[0]
        assert component.configuration_status == "configured"
        assert component.error_count == 1

    def test_list_components_malformed(self):
        self.service.get.return_value = {"components": None}
        with pytest.raises(MalformedResponse):
            self.configuration.list_components(NODES)

    def test_create_session(self):
        self.service.post.return_value = session_record("compute-20240101120000-ab12", "pending")
        session = self.configuration.create_session(
            "compute-20240101120000-ab12", "compute-23.7", NODES, ansible_verbosity=2
        )
        assert session.name == "compute-20240101120000-ab12"
        assert session.limit_ids == ["x1000c0s0b0n0", "x1000c0s0b0n1"]
        body = self.service.post.call_args.kwargs["json"]
        assert body["configuration_name"] == "compute-23.7"
        assert body["ansible_limit"] == "x1000c0s0b0n0,x1000c0s0b0n1"
        assert body["ansible_verbosity"] == 2
        assert body["target"] == {"definition": "dynamic", "groups": []}
        assert "ansible_passthrough" not in body

    def test_get_session(self):
        record = session_record("s-1", "complete", succeeded="false")
        record["target"] = {"definition": "image", "groups": [{"name": "compute", "members": ["img-in"]}]}
        record["status"]["artifacts"] = [{"image_id": "img-in", "result_id": "img-out", "type": "ims_customized_image"}]
        self.service.get.return_value = record
        session = self.configuration.get_session("s-1")
        assert session.is_complete
        assert session.succeeded == "false"
        assert session.target_definition == "image"
        assert session.target_groups == ["compute"]
        assert session.result_ids == ["img-out"]

    def test_get_session_malformed(self):
        self.service.get.return_value = {"status": {}}
        with pytest.raises(MalformedResponse):
            self.configuration.get_session("s-1")

    def test_list_sessions(self):
        self.service.get.return_value = {
            "sessions": [session_record("a", "running"), {"no": "name"}, session_record("b", "complete")],
            "next": None,
        }
        sessions = self.configuration.list_sessions(status="running")
        assert [s.name for s in sessions] == ["a", "b"]
        assert sessions[0].is_active
        assert not sessions[1].is_active
        assert self.service.get.call_args.kwargs["params"] == {"status": "running"}

    def test_delete_session(self):
        self.configuration.delete_session("s-1")
        assert self.service.delete.call_args.args == ("/sessions/s-1",)


class TestImageClient:
    def setup_method(self):
        self.service = service("ims")
        self.images = ImageClient(self.service)

    def test_list_images_sorted_and_filtered(self):
        self.service.get.return_value = [
            {"id": "b", "name": "compute-sles15sp5", "created": "2024-02-01"},
            {"id": "a", "name": "compute-sles15sp4", "created": "2023-05-01"},
            {"id": "c", "name": "uan", "created": "2024-03-01"},
            {"name": "no-id"},
        ]
        assert [i.id for i in self.images.list_images("compute")] == ["a", "b"]

    def test_artifact_reference(self):
        self.service.get.return_value = {
            "id": "a",
            "link": {"path": "s3://boot-images/a/manifest.json", "etag": "e1", "type": "s3"},
        }
        assert self.images.artifact_reference("a") == "s3://boot-images/a/manifest.json"

    def test_unknown_image(self):
        self.service.get.side_effect = not_found()
        assert self.images.artifact_reference("zzz") is None

    def test_delete_image(self):
        self.images.delete_image("img-1")
        assert self.service.delete.call_args.args == ("/images/img-1",)


class TestBootParametersClient:
    def setup_method(self):
        self.service = service("bss")
        self.bss = BootParametersClient(self.service)

    def test_get_boot_parameters_for_hosts(self):
        self.service.get.return_value = [
            {
                "hosts": ["x1000c0s0b0n0"],
                "nids": [1],
                "params": "console=ttyS0 root=craycps-s3:s3://boot-images/img-a/rootfs:etag:dvs",
                "kernel": "s3://boot-images/img-a/kernel",
                "initrd": "s3://boot-images/img-a/initrd",
                "cloud-init": {"user-data": {}},
            },
            "not-a-record",
        ]
        entries = self.bss.get_boot_parameters(NODES)
        assert len(entries) == 1
        assert entries[0].hosts == ["x1000c0s0b0n0"]
        assert entries[0].boot_image_id == "img-a"
        assert self.service.get.call_args.kwargs["params"] == {"name": ["x1000c0s0b0n0", "x1000c0s0b0n1"]}

    def test_get_all_boot_parameters(self):
        self.service.get.return_value = []
        assert self.bss.get_boot_parameters() == []
        assert self.service.get.call_args.kwargs["params"] is None

    def test_no_hosts_makes_no_request(self):
        assert self.bss.get_boot_parameters(NodeSet()) == []
        self.service.get.assert_not_called()

    def test_malformed(self):
        self.service.get.return_value = {"hosts": []}
        with pytest.raises(MalformedResponse):
            self.bss.get_boot_parameters()

    def test_boot_image_from_params(self):
        entry = BootParameters(params="metal.server=s3://boot-images/img-b/rootfs quiet", kernel="/local/vmlinuz")
        assert entry.boot_image_id == "img-b"
        assert BootParameters(kernel="http://tftp/vmlinuz").boot_image_id is None

    def test_update_boot_parameters(self):
        entry = BootParameters(hosts=["x1000c0s0b0n0"], params="quiet", kernel="s3://boot-images/img-a/kernel")
        self.bss.update_boot_parameters(entry)
        args, kwargs = self.service.patch.call_args
        assert args == ("/bootparameters",)
        assert kwargs["json"] == {
            "hosts": ["x1000c0s0b0n0"],
            "params": "quiet",
            "kernel": "s3://boot-images/img-a/kernel",
            "initrd": "",
        }


class TestVaultClient:
    def test_kube_credentials(self):
        client = service("vault")
        encoded = {
            key: base64.b64encode(value).decode()
            for key, value in (
                ("certificate-authority-data", b"CA"),
                ("client-certificate-data", b"CERT"),
                ("client-key-data", b"KEY"),
            )
        }
        client.execute.side_effect = [
            ApiResponse(200, "login", {"auth": {"client_token": "hvs.abc"}}),
            ApiResponse(200, "secret", {"data": {"data": encoded}}),
        ]
        vault = VaultClient(client, "alps")

        credentials = vault.kube_credentials(SecretToken("jwt"))

        assert credentials.client_key_pem == b"KEY"
        assert "KEY" not in repr(credentials)
        login, read = (c.args[0] for c in client.execute.call_args_list)
        assert login.path == "/v1/auth/jwt-manta-alps/login"
        assert login.json == {"jwt": "jwt", "role": "manta"}
        assert read.path == "/v1/manta/data/alps/k8s"
        assert read.headers["X-Vault-Token"] == "hvs.abc"

    def test_incomplete_secret(self):
        client = service("vault")
        client.base_url = "https://vault.example.com"
        client.execute.side_effect = [
            ApiResponse(200, "login", {"auth": {"client_token": "hvs.abc"}}),
            ApiResponse(200, "secret", {"data": {"client-key-data": "S0VZ"}}),
        ]
        with pytest.raises(MalformedResponse):
            VaultClient(client, "alps").kube_credentials(SecretToken("jwt"))


class TestArtifactFetch:
    def test_http_fetch(self, tmp_path):
        response = MagicMock(status_code=200)
        response.__enter__.return_value = response
        response.iter_content.return_value = [b"abc", b"", b"def"]
        session = MagicMock()
        session.get.return_value = response

        path = HttpArtifactFetcher(session=session).fetch("https://s3.example.com/manifest.json", tmp_path / "m.json")

        assert path.read_bytes() == b"abcdef"
        assert not (tmp_path / "m.json.part").exists()

    def test_http_fetch_rejected(self, tmp_path):
        response = MagicMock(status_code=403)
        response.__enter__.return_value = response
        session = MagicMock()
        session.get.return_value = response
        with pytest.raises(RequestRejected):
            HttpArtifactFetcher(session=session).fetch("https://s3.example.com/m", tmp_path / "m")
        assert not (tmp_path / "m").exists()

    def test_http_fetch_connection_error(self, tmp_path):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(TransportError):
            HttpArtifactFetcher(session=session).fetch("https://s3.example.com/m", tmp_path / "m")

    def test_write_failure_removes_partial_file(self, tmp_path):
        def chunks():
            yield b"abc"
            raise OSError("No space left on device")

        response = MagicMock(status_code=200)
        response.__enter__.return_value = response
        response.iter_content.return_value = chunks()
        session = MagicMock()
        session.get.return_value = response

        with pytest.raises(OSError):
            HttpArtifactFetcher(session=session).fetch("https://s3.example.com/rootfs", tmp_path / "rootfs")
        assert list(tmp_path.iterdir()) == []

    def test_unsupported_scheme(self, tmp_path):
        with pytest.raises(ValueError):
            fetch_artifact("s3://boot-images/a/manifest.json", tmp_path / "m")
        with pytest.raises(ValueError):
            fetch_artifact(None, tmp_path / "m")


class TestFactory:
    def test_token_provider_selection(self):
        assert isinstance(factory.token_provider_for(ClientConfig(token="abc")), StaticTokenProvider)
        provider = factory.token_provider_for(
            ClientConfig(base_url="https://api.cmn.alps.example.com/apis", username="alice", password="pw")
        )
        assert isinstance(provider, KeycloakTokenProvider)
        with pytest.raises(ConfigError):
            factory.token_provider_for(ClientConfig())

    def test_build_clients(self):
        config = ClientConfig(
            base_url="https://api.cmn.alps.example.com/apis",
            token="abc",
            proxy_url="socks5h://127.0.0.1:1080",
            max_retry_attempts=3,
        )
        clients = factory.build_clients(config)
        try:
            pcs = clients.power.client
            assert pcs.backend == "pcs"
            assert pcs.base_url == "https://api.cmn.alps.example.com/apis/power-control/v1"
            assert pcs.retry.max_attempts == 3
            assert pcs.proxies == config.proxies
            assert clients.inventory.client.credentials is clients.credentials
            assert clients.vault is None
            assert clients.boot_parameters.client.base_url == "https://api.cmn.alps.example.com/apis/bss/boot/v1"
        finally:
            clients.close()

    def test_vault_needs_site(self):
        config = ClientConfig(
            base_url="https://api.cmn.alps.example.com/apis",
            token="abc",
            vault_url="https://vault.example.com",
            site_name="alps",
        )
        clients = factory.build_clients(config)
        try:
            assert clients.vault.site_name == "alps"
            assert clients.vault.client.credentials is None
        finally:
            clients.close()
