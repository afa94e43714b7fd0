import json
from pprint import pformat
from urllib.parse import quote

import requests
from requests.exceptions import RequestException
from requests.utils import default_user_agent

from easypy.bunch import Bunch

from .logging import logger
from .exceptions import ApiError, UnexpectedResponse


FILESYSTEM = "FILESYSTEM"
VOLUME = "VOLUME"


def _to_bunch(data):
    if isinstance(data, dict):
        return Bunch.from_dict(data)
    if isinstance(data, list):
        return [_to_bunch(item) for item in data]
    return data


class RESTSession(requests.Session):
    def __init__(self, config, base_url, timeout=None):
        super().__init__()
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or config.nas_timeout
        self.ssl_verify = config.ssl_verify
        self.headers["Accept"] = "application/json"
        self.headers["Content-Type"] = "application/json"
        self.headers["User-Agent"] = f"TruenasCSI/{config.plugin_version} {default_user_agent()}"

    def request(self, verb, api_method, *args, params=None, log_result=True, **kwargs):
        verb = verb.upper()
        api_method = api_method.strip("/")
        url = [self.base_url, api_method]
        url.extend(quote(str(p), safe="") for p in args)
        url = "/".join(url)
        logger.info(f">>> [{verb}] {url}")

        if "data" in kwargs:
            kwargs["data"] = json.dumps(kwargs["data"])

        if params or kwargs:
            if log_result:
                for line in pformat(dict(kwargs, params=params)).splitlines():
                    logger.info(f"    {line}")
            else:
                logger.info("*** request payload is hidden ***")

        if verb == "GET":
            # query parameters must be applied as filters, not ignored
            kwargs["headers"] = {"X-Truenas-Force-Sql-Filters": "true"}
        kwargs.setdefault("timeout", self.timeout)

        try:
            ret = super().request(verb, url, verify=self.ssl_verify, params=params, **kwargs)
        except RequestException as e:
            raise ApiError(
                response=Bunch(status_code=None, text=f"The NAS at {self.base_url!r} cannot be accessed: {e}"),
                url=url,
            )

        if not 200 <= ret.status_code < 300:
            raise ApiError(response=ret, url=url)

        logger.info(f"<<< [{verb}] {url}")
        if ret.content:
            try:
                ret = _to_bunch(ret.json())
            except ValueError:
                raise UnexpectedResponse(resource=url, reason="response is not valid JSON")
            if log_result:
                for line in pformat(ret).splitlines():
                    logger.info(f"    {line}")
            else:
                size = len(ret) if isinstance(ret, (dict, tuple, list, str)) else '-'
                logger.info(f"{type(ret).__name__}[{size}]")
        else:
            ret = None
        logger.info(f"--- [{verb}] {url}: Done")
        return ret

    def get_one(self, resource, log_result=True, **filters):
        """
        Get the single object of `resource` matching all `filters`, or None if there is none.
        Multiple matches, or objects which do not match the filters, are reported as UnexpectedResponse.
        """
        items = self.request("get", resource, params=filters, log_result=log_result)
        if not isinstance(items, list):
            raise UnexpectedResponse(resource=resource, reason=f"expected a list, got {type(items).__name__}")
        for item in items:
            mismatch = {k: item.get(k) for k, v in filters.items() if str(item.get(k)) != str(v)}
            if mismatch:
                raise UnexpectedResponse(resource=resource, reason=f"filtering by {filters} returned {mismatch}")
        if len(items) > 1:
            raise UnexpectedResponse(resource=resource, reason=f"{len(items)} objects match {filters}")
        return items[0] if items else None

    def delete_if_exists(self, resource, id_, **kwargs):
        """Delete an object, treating 'not found' as success."""
        try:
            self.request("delete", resource, id_, **kwargs)
        except ApiError as exc:
            if exc.status_code != 404:
                raise
            logger.info(f"{resource}/{id_} is already gone")


class NasSession(RESTSession):
    """
    Communication with the TrueNAS REST API (v2.0).
    Operations over datasets, NFS shares and iSCSI extents, targets, auths and associations.
    """

    def __init__(self, config, backend, timeout=None):
        super().__init__(config, base_url=backend.apiurl, timeout=timeout)
        self.backend = backend
        if backend.apikey:
            self.headers["Authorization"] = f"Bearer {backend.apikey}"
        else:
            self.auth = (backend.username, backend.password)

    @classmethod
    def create(cls, config, backend, timeout=None):
        session = cls(config, backend, timeout=timeout)
        auth = "api key" if backend.apikey else "user/password"
        logger.debug(f"NAS session to {backend.apiurl} ({backend.name!r}, {auth}, timeout={session.timeout}s)")
        return session

    # ----------------------------
    # Datasets
    @staticmethod
    def _parse_dataset(data) -> Bunch:
        def prop(name, field):
            value = data.get(name)
            return value.get(field) if isinstance(value, dict) else None

        try:
            return Bunch(
                id=data["id"],
                type=data["type"],
                comments=prop("comments", "rawvalue") or "",
                volsize=prop("volsize", "parsed"),
                refquota=prop("refquota", "parsed"),
                refreservation=prop("refreservation", "parsed"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise UnexpectedResponse(resource="pool/dataset", reason=f"cannot parse dataset ({e!r})")

    def get_dataset(self, name):
        """Get dataset by its name (eg. tank/k8s/volume). Return None if it does not exist."""
        try:
            data = self.request("get", "pool/dataset/id", name)
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._parse_dataset(data)

    def create_dataset(self, name, type, comments, **properties):
        data = dict(name=name, type=type, comments=comments, **properties)
        return self.request("post", "pool/dataset", data=data)

    def update_dataset(self, name, **properties):
        return self.request("put", "pool/dataset/id", name, data=properties)

    def delete_dataset(self, name):
        self.delete_if_exists("pool/dataset/id", name, data={"recursive": True})

    def set_dataset_permission(self, name, mode):
        return self.request("post", "pool/dataset/id", name, "permission", data={"acl": [], "mode": mode})

    # ----------------------------
    # NFS shares
    def get_nfs_share(self, comment):
        return self.get_one("sharing/nfs", comment=comment)

    def create_nfs_share(self, paths, comment, hosts, networks, maproot_user, maproot_group):
        return self.request("post", "sharing/nfs", data=dict(
            enabled=True, paths=paths, comment=comment, hosts=hosts, networks=networks,
            maproot_user=maproot_user, maproot_group=maproot_group,
        ))

    def delete_nfs_share(self, share_id):
        self.delete_if_exists("sharing/nfs/id", share_id)

    # ----------------------------
    # iSCSI extents
    def get_iscsi_extent(self, **filters):
        return self.get_one("iscsi/extent", **filters)

    def create_iscsi_extent(self, name, disk, comment, serial, pblocksize=False):
        return self.request("post", "iscsi/extent", data=dict(
            name=name, type="DISK", disk=disk, comment=comment, serial=serial,
            insecure_tpc=False, pblocksize=pblocksize,
        ))

    def delete_iscsi_extent(self, extent_id):
        self.delete_if_exists("iscsi/extent/id", extent_id)

    # ----------------------------
    # iSCSI targets
    def get_iscsi_target(self, name):
        return self.get_one("iscsi/target", name=name)

    def create_iscsi_target(self, name, portal_id, auth_tag):
        return self.request("post", "iscsi/target", data=dict(
            name=name, groups=[{"portal": portal_id, "authmethod": "CHAP", "auth": auth_tag}],
        ))

    def delete_iscsi_target(self, target_id):
        self.delete_if_exists("iscsi/target/id", target_id, data=False)

    # ----------------------------
    # iSCSI CHAP credentials
    def get_iscsi_auth(self, **filters):
        return self.get_one("iscsi/auth", log_result=False, **filters)

    def get_iscsi_auth_for_target(self, target):
        """Get the CHAP credentials referenced by the (single) portal group of `target`, if any."""
        groups = target.get("groups") or []
        if len(groups) > 1:
            raise UnexpectedResponse(resource="iscsi/target", reason=f"too many groups assigned to {target.name!r}")
        if not groups or groups[0].get("auth") is None:
            return None
        return self.get_iscsi_auth(tag=groups[0].auth)

    def create_iscsi_auth(self, tag, user, secret):
        return self.request(
            "post", "iscsi/auth", data=dict(tag=tag, user=user, secret=secret), log_result=False
        )

    def update_iscsi_auth(self, auth_id, **data):
        return self.request("put", "iscsi/auth/id", auth_id, data=data, log_result=False)

    def delete_iscsi_auth(self, auth_id):
        self.delete_if_exists("iscsi/auth/id", auth_id)

    # ----------------------------
    # iSCSI target <-> extent associations
    def get_iscsi_targetextent(self, target_id, extent_id):
        return self.get_one("iscsi/targetextent", target=target_id, extent=extent_id)

    def create_iscsi_targetextent(self, target_id, extent_id, lunid=0):
        return self.request("post", "iscsi/targetextent", data=dict(target=target_id, extent=extent_id, lunid=lunid))

    def delete_iscsi_targetextent(self, association_id):
        self.delete_if_exists("iscsi/targetextent/id", association_id, data=True)

    def get_iscsi_basename(self) -> str:
        ret = self.request("get", "iscsi/global")
        if not (isinstance(ret, dict) and ret.get("basename")):
            raise UnexpectedResponse(resource="iscsi/global", reason="missing basename")
        return ret.basename
