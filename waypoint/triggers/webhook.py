"""Webhook trigger gate: validates an inbound call before it may fire."""

from __future__ import annotations

import base64
import hashlib
import hmac
import ipaddress
import json
import logging
from typing import Any, Dict, List, Literal, Mapping, Optional

import jwt
from jsonschema import Draft7Validator
from jsonschema import ValidationError as JsonSchemaError
from jsonschema.exceptions import SchemaError
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..errors import WaypointError

logger = logging.getLogger(__name__)


class WebhookRejected(WaypointError):
    """Inbound webhook call failed validation."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class WebhookAuth(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    type: Literal["none", "bearer", "basic", "api_key", "signature", "jwt"] = "none"
    secret: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    header: Optional[str] = None
    audience: Optional[str] = None
    issuer: Optional[str] = None


_FLAT_AUTH_KEYS = {"authType": "type", "auth_type": "type", "secret": "secret"}
_IP_KEYS = ("allowedIPs", "allowedIps", "allowed_ips")


class WebhookConfig(BaseModel):
    """Webhook gate settings.

    Both the nested ``authentication`` object and the flat
    ``{authType, secret, allowedIPs}`` form are accepted, as is
    ``allowedIPs`` inside ``authentication``. ``payloadValidation`` may
    carry the JSON schema as a string. Unknown keys are rejected.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    url: Optional[str] = None
    method: Optional[str] = "POST"
    authentication: WebhookAuth = WebhookAuth()
    allowed_ips: List[str] = Field(default=[], validation_alias=AliasChoices(*_IP_KEYS))
    expected_headers: Dict[str, str] = {}
    payload_schema: Optional[Dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("payloadSchema", "payload_schema", "payloadValidation"),
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        auth = data.get("authentication")
        auth = dict(auth) if isinstance(auth, dict) else auth
        if auth is None:
            auth = {}
        if isinstance(auth, dict):
            for flat, key in _FLAT_AUTH_KEYS.items():
                if flat in data:
                    value = data.pop(flat)
                    if auth.setdefault(key, value) != value:
                        raise ValueError(f"'{flat}' conflicts with authentication.{key}")
            for key in _IP_KEYS:
                if key in auth:
                    nested = auth.pop(key)
                    if not any(k in data for k in _IP_KEYS):
                        data["allowedIPs"] = nested
        if auth:
            data["authentication"] = auth
        else:
            data.pop("authentication", None)
        schema = data.get("payloadValidation")
        if isinstance(schema, str):
            try:
                data["payloadValidation"] = json.loads(schema)
            except json.JSONDecodeError as exc:
                raise ValueError(f"payloadValidation is not valid JSON: {exc}") from None
        return data

    @field_validator("method")
    @classmethod
    def _upper(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @field_validator("allowed_ips")
    @classmethod
    def _networks(cls, value: List[str]) -> List[str]:
        for entry in value:
            ipaddress.ip_network(entry, strict=False)
        return value

    @field_validator("payload_schema")
    @classmethod
    def _schema(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            try:
                Draft7Validator.check_schema(value)
            except SchemaError as exc:
                raise ValueError(f"Invalid payload schema: {exc.message}") from None
        return value


def sign_payload(secret: str, body: bytes) -> str:
    """Signature header value for ``body``, as senders are expected to compute it."""
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _same(supplied: str, expected: str) -> bool:
    """Constant-time comparison that tolerates any header characters."""
    return hmac.compare_digest(
        supplied.encode("utf-8", "surrogateescape"), expected.encode("utf-8", "surrogateescape")
    )


class WebhookGate:
    """Checks method, source address, credentials, headers and payload."""

    def __init__(self, config: WebhookConfig) -> None:
        self.config = config
        self._networks = [ipaddress.ip_network(e, strict=False) for e in config.allowed_ips]
        self._validator = (
            Draft7Validator(config.payload_schema) if config.payload_schema else None
        )

    def verify(
        self,
        method: str,
        headers: Mapping[str, str],
        body: bytes,
        client_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Validate the call and return the parsed JSON payload.

        Raises:
            WebhookRejected: 400 for method, header or payload problems,
                403 for source address or credential problems.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        if self.config.method and method.upper() != self.config.method:
            raise WebhookRejected(400, "Invalid HTTP method")
        if self._networks and not self._ip_allowed(client_ip):
            raise WebhookRejected(403, f"Source address {client_ip} not allowed")
        if not self._authenticated(lowered, body):
            raise WebhookRejected(403, "Authentication failed")
        for key, value in self.config.expected_headers.items():
            if lowered.get(key.lower()) != value:
                raise WebhookRejected(400, f"Header validation failed: {key}")

        payload = self._parse(body)
        if self._validator is not None:
            try:
                self._validator.validate(payload)
            except JsonSchemaError as exc:
                raise WebhookRejected(400, f"Payload validation failed: {exc.message}") from None
        return payload

    def credential_header(self) -> Optional[str]:
        """Lower-cased name of the header carrying the caller's credential."""
        auth = self.config.authentication
        if auth.type in ("bearer", "basic", "jwt"):
            return "authorization"
        if auth.type == "api_key":
            return (auth.header or "x-api-key").lower()
        if auth.type == "signature":
            return (auth.header or "x-signature").lower()
        return None

    def _ip_allowed(self, client_ip: Optional[str]) -> bool:
        if not client_ip:
            return False
        try:
            address = ipaddress.ip_address(client_ip)
        except ValueError:
            return False
        return any(address in network for network in self._networks)

    @staticmethod
    def _parse(body: bytes) -> Dict[str, Any]:
        if not body:
            return {}
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise WebhookRejected(400, "Body is not valid JSON") from None
        if not isinstance(payload, dict):
            return {"body": payload}
        return payload

    def _authenticated(self, headers: Mapping[str, str], body: bytes) -> bool:
        auth = self.config.authentication
        secret = auth.secret or ""
        if auth.type == "none":
            return True
        if auth.type == "bearer":
            return _same(headers.get("authorization", ""), f"Bearer {secret}")
        if auth.type == "api_key":
            supplied = headers.get((auth.header or "x-api-key").lower(), "")
            return _same(supplied, secret)
        if auth.type == "basic":
            return self._basic(headers.get("authorization", ""), auth)
        if auth.type == "signature":
            supplied = headers.get((auth.header or "x-signature").lower(), "")
            if not supplied.startswith("sha256="):
                supplied = "sha256=" + supplied
            return _same(supplied, sign_payload(secret, body))
        if auth.type == "jwt":
            return self._jwt(headers.get("authorization", ""), auth)
        return False

    @staticmethod
    def _basic(header: str, auth: WebhookAuth) -> bool:
        if not header.startswith("Basic "):
            return False
        try:
            decoded = base64.b64decode(header[6:], validate=True).decode()
        except (ValueError, UnicodeDecodeError):
            return False
        if auth.username is not None:
            expected = f"{auth.username}:{auth.password or ''}"
        else:
            expected = auth.secret or ""
        return _same(decoded, expected)

    @staticmethod
    def _jwt(header: str, auth: WebhookAuth) -> bool:
        if not header.startswith("Bearer "):
            return False
        options = {"verify_aud": auth.audience is not None}
        try:
            jwt.decode(
                header[7:],
                auth.secret or "",
                algorithms=["HS256"],
                audience=auth.audience,
                issuer=auth.issuer,
                options=options,
            )
        except jwt.PyJWTError as exc:
            logger.info(f"Webhook JWT rejected: {exc}")
            return False
        return True
