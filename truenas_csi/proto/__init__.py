"""
CSI v1 protobuf messages and gRPC servicers.

The bindings are compiled from ``csi.proto`` when this package is first imported
(grpcio-tools must be installed). The proto path is resolved against ``sys.path``.
"""

import os
import sys

import grpc

# directory holding the 'truenas_csi' package, needed on the proto include path (eg. for editable installs)
_PACKAGE_PARENT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
if _PACKAGE_PARENT not in sys.path:
    sys.path.append(_PACKAGE_PARENT)

csi_pb2, csi_pb2_grpc = grpc.protos_and_services("truenas_csi/proto/csi.proto")
