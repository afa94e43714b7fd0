import re
import sys
import logging
from pathlib import Path
from unittest.mock import patch, MagicMock

import grpc
import pytest

from truenas_csi.server import CsiController, CsiNode, Instrumented
from truenas_csi.proto import csi_pb2
from truenas_csi.volume_context import VolumeContext, IscsiContext, IscsiAuth

ROOT = Path(__file__).resolve().parents[1]

PASSWORD = "S3CRETPASSWORD"
ISCSI_CONTEXT = VolumeContext(
    iscsi=IscsiContext(
        portal="10.0.0.1",
        target="iqn.2005-10.org.freenas.ctl:abc",
        in_auth=IscsiAuth(username="abc", password=PASSWORD),
    )
).to_volume_context()


@pytest.fixture
def log(caplog):
    caplog.set_level(logging.DEBUG, logger="truenas-csi")
    return caplog


class TestInstrumentedSuite:

    def test_request_volume_context_not_logged(self, log, volume_capabilities):
        """Test CHAP credentials in the request's volume context never reach the log"""
        # Preparation
        stage = Instrumented.logged(CsiNode.NodeStageVolume)
        request = csi_pb2.NodeStageVolumeRequest(
            volume_id="default:/mnt/tank/k8s/abc",
            staging_target_path="/staging",
            volume_capability=volume_capabilities()[0],
            volume_context=ISCSI_CONTEXT,
            secrets={"password": "node-secret"},
        )

        # Execution
        with patch.object(CsiNode, "sessions", MagicMock()) as sessions:
            stage(CsiNode(), request, MagicMock())

        # Assertion
        sessions.stage.assert_called_once()
        assert sessions.stage.call_args[0][1].in_auth.password == PASSWORD
        assert "NodeStageVolume" in log.text
        assert "/staging" in log.text
        assert ISCSI_CONTEXT["b64"] not in log.text
        assert PASSWORD not in log.text
        assert "node-secret" not in log.text

    def test_response_volume_context_not_logged(self, log, controller, fake_nas, volume_capabilities):
        """Test the CreateVolume response is logged without the volume context holding CHAP credentials"""
        # Preparation
        create = Instrumented.logged(CsiController.CreateVolume)
        request = csi_pb2.CreateVolumeRequest(name="pvc-1", volume_capabilities=volume_capabilities())

        # Execution
        ret = create(controller, request, MagicMock())

        # Assertion
        attachment = VolumeContext.from_volume_context(ret.volume.volume_context)
        secret = list(fake_nas.auths.values())[0].secret
        assert attachment.iscsi.in_auth.password == secret
        assert ret.volume.volume_id in log.text
        assert ret.volume.volume_context["b64"] not in log.text
        assert secret not in log.text

    def test_missing_required_field(self, log):
        """Test requests without a required field are aborted with INVALID_ARGUMENT before the handler runs"""
        # Preparation
        unstage = Instrumented.logged(CsiNode.NodeUnstageVolume)
        request = csi_pb2.NodeUnstageVolumeRequest(volume_id="default:/mnt/tank/k8s/abc")
        context = MagicMock()
        context.abort.side_effect = RuntimeError("aborted")

        # Execution
        with patch.object(CsiNode, "sessions", MagicMock()) as sessions:
            with pytest.raises(RuntimeError):
                unstage(CsiNode(), request, context)

        # Assertion
        context.abort.assert_called_once_with(
            grpc.StatusCode.INVALID_ARGUMENT, "Missing required fields: staging_target_path"
        )
        sessions.unstage.assert_not_called()


def _declared_dependencies():
    text = (ROOT / "pyproject.toml").read_text()
    names = set()
    for block in re.findall(r"^(?:dependencies|test) = \[(.*?)\]", text, re.S | re.M):
        names.update(re.findall(r'"([A-Za-z0-9_.-]+)', block))
    return names


# import name -> distribution name
DISTRIBUTIONS = {
    "easypy": "weka-easypy",
    "google": "protobuf",
    "grpc": "grpcio",
    "plumbum": "plumbum",
    "psutil": "psutil",
    "pytest": "pytest",
    "requests": "requests",
    "urllib3": "urllib3",
    "yaml": "pyyaml",
}


def test_imports_are_declared():
    """Test every third party package imported by truenas_csi is declared under its distribution name"""
    # Preparation
    pattern = re.compile(r"^\s*(?:from\s+([A-Za-z_][\w.]*)\s+import\s|import\s+([A-Za-z_][\w.]*))", re.M)
    imported = set()
    for path in (ROOT / "truenas_csi").rglob("*.py"):
        for from_name, import_name in pattern.findall(path.read_text()):
            imported.add((from_name or import_name).split(".")[0])
    third_party = imported - set(sys.stdlib_module_names) - {"truenas_csi"}

    # Execution
    declared = _declared_dependencies()

    # Assertion
    assert third_party <= set(DISTRIBUTIONS)
    assert {DISTRIBUTIONS[name] for name in third_party} <= declared
    assert "easypy" not in declared
