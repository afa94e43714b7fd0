import socket

from plumbum import local
from plumbum.typed_env import TypedEnv

from easypy.tokens import (
    Token,
    CONTROLLER_AND_NODE,
    CONTROLLER,
    NODE,
)
from easypy.caching import cached_property

from . import __version__


class Config(TypedEnv):
    class Path(TypedEnv.Str):
        convert = staticmethod(local.path)

    plugin_name = TypedEnv.Str("X_CSI_PLUGIN_NAME", default="csi.truenas.io")
    plugin_version = TypedEnv.Str("X_CSI_PLUGIN_VERSION", default=__version__)

    controller_config = Path(
        "X_CSI_CONTROLLER_CONFIG", default=local.path("/etc/truenas-csi/config.yaml")
    )
    log_level = TypedEnv.Str("X_CSI_LOG_LEVEL", default="info")
    node_id = TypedEnv.Str("X_CSI_NODE_ID", default=socket.getfqdn())

    ssl_verify = TypedEnv.Bool("X_CSI_SSL_VERIFY", default=True)
    nas_timeout = TypedEnv.Int("X_CSI_NAS_TIMEOUT", default=30)
    worker_threads = TypedEnv.Int("X_CSI_WORKER_THREADS", default=10)
    device_wait_timeout = TypedEnv.Int("X_CSI_DEVICE_WAIT_TIMEOUT", default=5)

    _mode = TypedEnv.Str("X_CSI_MODE", default="controller_and_node")
    _endpoint = TypedEnv.Str("CSI_ENDPOINT", default="unix:///csi/csi.sock")

    # request parameters selecting the backend and its configuration
    backend_parameter = "truenas-csi/backend"
    configuration_parameter = "truenas-csi/configuration"

    @property
    def mode(self):
        mode = Token(self._mode.upper())
        assert mode in {CONTROLLER_AND_NODE, CONTROLLER, NODE}, f"invalid mode: {mode}"
        return mode

    @property
    def endpoint(self):
        endpoint = self._endpoint.strip()
        if endpoint.startswith("tcp://"):
            return endpoint[len("tcp://"):]
        return endpoint

    @cached_property
    def backends(self):
        """Backends loaded (and validated) from the controller configuration file."""
        from .backends import load_backends
        return load_backends(self.controller_config)
