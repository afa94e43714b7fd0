import copy
import pytest
import yaml

from easypy.tokens import DELETE, RETAIN

from truenas_csi.backends import load_backends, parse_delete_policy
from truenas_csi.exceptions import ConfigurationError, BackendNotFound, InternalError

from conftest import BACKENDS


@pytest.fixture
def definitions():
    return copy.deepcopy(BACKENDS)


class TestLoadBackendsSuite:

    def test_load_from_yaml(self, tmp_path, definitions):
        """Test backends are loaded from a YAML file"""
        # Preparation
        path = tmp_path / "backends.yaml"
        path.write_text(yaml.safe_dump(definitions))

        # Execution
        resolver = load_backends(str(path))

        # Assertion
        backend = resolver.backend("default")
        assert backend.apiurl == "https://nas.local/api/v2.0"
        assert sorted(backend.configurations) == ["default", "retain", "sparse"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_backends(str(tmp_path / "missing.yaml"))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "backends.yaml"
        path.write_text("- default\n")
        with pytest.raises(ConfigurationError):
            load_backends(str(path))

    def test_settings_merged(self, definitions):
        """Test configuration level nfs/iscsi settings override backend level defaults"""
        # Preparation
        definitions["default"]["configurations"]["default"]["iscsi"] = {"portalid": 2, "volblocksize": "16K"}

        # Execution
        cfg = load_backends(definitions).lookup("default", "default")

        # Assertion
        assert cfg.iscsi.portal == "10.0.0.1:3260"
        assert cfg.iscsi.portal_id == 2
        assert cfg.iscsi.volblocksize == "16K"
        assert cfg.nfs.server == "10.0.0.1"
        assert cfg.nfs.allowed_networks == ["10.0.0.0/24"]
        assert cfg.nfs.maproot_user == "root"

    def test_dataset_normalized(self, definitions):
        definitions["default"]["configurations"]["default"]["dataset"] = "/tank/k8s/"
        assert load_backends(definitions).lookup("default", "default").dataset == "tank/k8s"

    def test_duplicate_roots(self, definitions):
        """Test two configurations may not share a root dataset"""
        definitions["default"]["configurations"]["retain"]["dataset"] = "tank/k8s/"
        with pytest.raises(ConfigurationError) as exc:
            load_backends(definitions)
        assert "tank/k8s" in exc.value.render(color=False)

    def test_invalid_delete_policy(self, definitions):
        definitions["default"]["configurations"]["retain"]["deletepolicy"] = "archive"
        with pytest.raises(ConfigurationError):
            load_backends(definitions)

    @pytest.mark.parametrize("drop", [["apiurl"], ["apikey"]])
    def test_missing_connection_settings(self, definitions, drop):
        """Test a backend needs an API url and either an API key or a username and password"""
        for key in drop:
            del definitions["default"][key]
        with pytest.raises(ConfigurationError):
            load_backends(definitions)

    def test_basic_credentials(self, definitions):
        del definitions["default"]["apikey"]
        definitions["default"].update(username="root", password="secret")
        backend = load_backends(definitions).backend("default")
        assert (backend.username, backend.password, backend.apikey) == ("root", "secret", None)

    def test_missing_dataset(self, definitions):
        definitions["default"]["configurations"]["retain"] = {"deletepolicy": "retain"}
        with pytest.raises(ConfigurationError):
            load_backends(definitions)

    def test_missing_iscsi_portal_id(self, definitions):
        del definitions["default"]["iscsi"]["portalid"]
        with pytest.raises(ConfigurationError):
            load_backends(definitions)


class TestBackendResolverSuite:

    def test_lookup(self, backends):
        assert backends.lookup("default", "retain").dataset == "tank/retain"

    def test_lookup_defaults(self, backends):
        """Test empty backend and configuration names select 'default'"""
        assert backends.lookup("", None).dataset == "tank/k8s"

    @pytest.mark.parametrize("backend, config", [("other", "default"), ("default", "other")])
    def test_lookup_unknown(self, backends, backend, config):
        with pytest.raises(BackendNotFound):
            backends.lookup(backend, config)

    def test_delete_policy(self, backends):
        assert backends.delete_policy("default", "tank/k8s") == DELETE
        assert backends.delete_policy("default", "tank/retain") == RETAIN

    def test_delete_policy_unknown_root(self, backends):
        """Test volumes outside of every configured root have no delete policy"""
        with pytest.raises(InternalError):
            backends.delete_policy("default", "tank/elsewhere")

    def test_sparse(self, backends):
        assert backends.sparse("default", "tank/sparse")
        assert not backends.sparse("default", "tank/k8s")
        assert not backends.sparse("default", "tank/elsewhere")

    def test_contains(self, backends):
        assert "default" in backends
        assert "other" not in backends


@pytest.mark.parametrize("value, expected", [("delete", DELETE), ("RETAIN", RETAIN), ("Retain", RETAIN)])
def test_parse_delete_policy(value, expected):
    assert parse_delete_policy(value) == expected
