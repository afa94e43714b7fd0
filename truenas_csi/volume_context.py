"""
Attachment descriptor handed from the controller to the node.

On the wire the descriptor is a single volume context entry, ``b64``, holding the
base64 encoded JSON document::

    {"iscsi": {"portal": ..., "target": ..., "inAuth": {"username": ..., "password": ...}, "outAuth": {...}},
     "nfs": {"address": "<server>:<path>"}}
"""

import json
import binascii
from base64 import b64encode, b64decode
from dataclasses import dataclass
from typing import Optional

from .exceptions import Abort
from .csi_types import FAILED_PRECONDITION


CONTEXT_KEY = "b64"


@dataclass(frozen=True)
class IscsiAuth:
    username: str
    password: str

    def to_dict(self):
        return {"username": self.username, "password": self.password}

    @classmethod
    def from_dict(cls, data):
        if data is None:
            return None
        return cls(username=data["username"], password=data["password"])


@dataclass(frozen=True)
class IscsiContext:
    portal: str
    target: str
    in_auth: Optional[IscsiAuth] = None
    out_auth: Optional[IscsiAuth] = None

    @property
    def portal_with_port(self) -> str:
        return self.portal if ":" in self.portal else f"{self.portal}:3260"

    def to_dict(self):
        ret = {"portal": self.portal, "target": self.target}
        if self.in_auth:
            ret["inAuth"] = self.in_auth.to_dict()
        if self.out_auth:
            ret["outAuth"] = self.out_auth.to_dict()
        return ret

    @classmethod
    def from_dict(cls, data):
        return cls(
            portal=data["portal"],
            target=data["target"],
            in_auth=IscsiAuth.from_dict(data.get("inAuth")),
            out_auth=IscsiAuth.from_dict(data.get("outAuth")),
        )


@dataclass(frozen=True)
class NfsContext:
    address: str

    def to_dict(self):
        return {"address": self.address}

    @classmethod
    def from_dict(cls, data):
        return cls(address=data["address"])


@dataclass(frozen=True)
class VolumeContext:
    iscsi: Optional[IscsiContext] = None
    nfs: Optional[NfsContext] = None

    def to_dict(self):
        ret = {}
        if self.iscsi:
            ret["iscsi"] = self.iscsi.to_dict()
        if self.nfs:
            ret["nfs"] = self.nfs.to_dict()
        return ret

    def serialize(self) -> str:
        return b64encode(json.dumps(self.to_dict(), separators=(",", ":")).encode()).decode("ascii")

    @classmethod
    def deserialize(cls, value: str) -> "VolumeContext":
        data = json.loads(b64decode(value, validate=True))
        return cls(
            iscsi=IscsiContext.from_dict(data["iscsi"]) if data.get("iscsi") else None,
            nfs=NfsContext.from_dict(data["nfs"]) if data.get("nfs") else None,
        )

    def to_volume_context(self) -> dict:
        return {CONTEXT_KEY: self.serialize()}

    @classmethod
    def from_volume_context(cls, volume_context) -> "VolumeContext":
        """Decode the descriptor from a request's volume context, aborting with FAILED_PRECONDITION if unusable."""
        if not volume_context or CONTEXT_KEY not in volume_context:
            raise Abort(FAILED_PRECONDITION, "Invalid volume context received: missing 'b64' entry")
        try:
            return cls.deserialize(volume_context[CONTEXT_KEY])
        except (binascii.Error, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise Abort(FAILED_PRECONDITION, f"Invalid volume context received: {exc!r}")
