import json
import logging
import time

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

import config

if not config.ODOO_VERIFY_SSL:
    # Suppress SSL warnings for self-signed Odoo instances
    urllib3.disable_warnings(InsecureRequestWarning)

AUTH_TTL_SECONDS = 3600

SCHEMA_DRIFT_MARKERS = ("invalid field", "unknown field")


class RemoteRpcError(Exception):
    """Raised for HTTP failures and JSON-RPC error envelopes returned by Odoo."""

    def __init__(self, message, code=None, data=None, status=None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data
        self.status = status


class SchemaDriftError(RemoteRpcError):
    """Odoo rejected a field that is not defined on the target model."""


def _envelope_text(message, data) -> str:
    text = message or ""
    if data:
        text = f"{text} {json.dumps(data, default=str)}"
    return text.lower()


def _mentions_missing_field(text) -> bool:
    if any(marker in text for marker in SCHEMA_DRIFT_MARKERS):
        return True
    # older servers: "field 'x_foo' does not exist"
    return "field" in text and "does not exist" in text


def is_schema_drift_error(error, fields=()) -> bool:
    """
    True when the error says a field is missing from the Odoo schema.

    When fields are given, a generic RPC error that names one of them counts
    as schema drift too.
    """
    if isinstance(error, SchemaDriftError):
        return True
    if not isinstance(error, RemoteRpcError):
        return False
    text = _envelope_text(error.message, error.data)
    if _mentions_missing_field(text):
        return True
    return any(field.lower() in text for field in fields)


class OdooClient:
    """
    JSON-RPC client for Odoo with a cached login.

    The uid obtained from common.login is kept for auth_ttl seconds and every
    execute_kw call goes through authenticate() so a stale login is renewed
    transparently. No retries happen at this layer.
    """

    def __init__(self, odoo_config, session=None, auth_ttl=AUTH_TTL_SECONDS, clock=time.time):
        self.config = odoo_config
        self.endpoint = f"{odoo_config.url}/jsonrpc"
        self.session = session or requests.Session()
        self.auth_ttl = auth_ttl
        self._clock = clock
        self._uid = None
        self._uid_expires_at = 0.0
        self._rpc_id = 0

    def _jsonrpc(self, service, method, args):
        self._rpc_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": args},
            "id": self._rpc_id,
        }
        logging.debug("Sending %s.%s to Odoo (id=%s)", service, method, self._rpc_id)

        try:
            response = self.session.post(
                self.endpoint,
                json=payload,
                verify=config.ODOO_VERIFY_SSL,
                timeout=config.ODOO_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            logging.error("Request failed to Odoo API: %s", e)
            raise RemoteRpcError(f"Odoo RPC request failed: {e}") from e

        if not response.ok:
            raise RemoteRpcError(
                f"Odoo RPC HTTP error: {response.status_code} {response.reason}",
                status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteRpcError(f"Odoo RPC error: invalid JSON response ({e})") from e

        error = body.get("error")
        if error:
            message = error.get("message") or "Unknown error"
            data = error.get("data")
            detail = (data or {}).get("message") if isinstance(data, dict) else None
            text = f"Odoo RPC error: {detail or message}"
            if data:
                text = f"{text} | data: {json.dumps(data, default=str)}"
            error_cls = RemoteRpcError
            if _mentions_missing_field(_envelope_text(message, data)):
                error_cls = SchemaDriftError
            raise error_cls(text, code=error.get("code"), data=data, status=response.status_code)

        if "result" not in body:
            raise RemoteRpcError("Odoo RPC error: missing result")
        return body["result"]

    def authenticate(self) -> int:
        now = self._clock()
        if self._uid is not None and now < self._uid_expires_at:
            return self._uid

        uid = self._jsonrpc(
            "common",
            "login",
            [self.config.database, self.config.username, self.config.api_key],
        )
        if not uid or not isinstance(uid, int) or isinstance(uid, bool):
            raise RemoteRpcError("Odoo authentication failed: invalid response")

        logging.info("Authenticated to Odoo database %s as uid %s", self.config.database, uid)
        self._uid = uid
        self._uid_expires_at = now + self.auth_ttl
        return uid

    def execute_kw(self, model, method, args=None, kwargs=None):
        uid = self.authenticate()
        return self._jsonrpc(
            "object",
            "execute_kw",
            [
                self.config.database,
                uid,
                self.config.api_key,
                model,
                method,
                args if args is not None else [],
                kwargs if kwargs is not None else {},
            ],
        )

    def call(self, model, method, args=None, kwargs=None):
        return self.execute_kw(model, method, args, kwargs)

    def search(self, model, domain, limit=None, offset=None):
        options = {}
        if limit is not None:
            options["limit"] = limit
        if offset is not None:
            options["offset"] = offset
        return self.execute_kw(model, "search", [domain], options)

    def read(self, model, ids, fields=None):
        kwargs = {"fields": fields} if fields else {}
        return self.execute_kw(model, "read", [ids], kwargs)

    def create(self, model, values) -> int:
        result = self.execute_kw(model, "create", [[values]])
        if isinstance(result, list):
            if not result:
                raise RemoteRpcError(f"Odoo RPC error: create on {model} returned no id")
            result = result[0]
        return int(result)

    def write(self, model, ids, values):
        return self.execute_kw(model, "write", [ids, values])

    def unlink(self, model, ids):
        return self.execute_kw(model, "unlink", [ids])
