from __future__ import annotations

import base64
import logging
import posixpath
import re
import shlex
import time
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import requests

from sandbox_orchestrator.errors import ProvisioningError, ReadError, SandboxExpiredError
from sandbox_orchestrator.sandbox_backends.base import (
    BaseSandboxProvider,
    CommandResult,
    SandboxInfo,
    materialize_output,
    utc_now,
)

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Sequence

    from sandbox_orchestrator.config import SandboxSettings

logger = logging.getLogger(__name__)

CLAIM_API_GROUP = "extensions.agents.x-k8s.io"
CLAIM_API_VERSION = "v1alpha1"
CLAIM_PLURAL_NAME = "sandboxclaims"

SANDBOX_API_GROUP = "agents.x-k8s.io"
SANDBOX_API_VERSION = "v1alpha1"
SANDBOX_PLURAL_NAME = "sandboxes"

EXPIRED_ERROR_CODES = ("sandbox_stopped", "sandbox_expired")
# Appended by the runtime when exec output exceeds its size cap.
EXEC_TRUNCATION_MARKER = "\n<output truncated>"

_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def _dns_safe_claim_name(prefix: str, suffix: str | None = None) -> str:
    suffix = suffix or uuid.uuid4().hex[:8]
    name = f"{prefix}-{suffix}".lower()
    name = re.sub(r"[^a-z0-9-]", "-", name)
    name = name.strip("-")
    if len(name) > 63:
        name = name[:63].rstrip("-")

    if not _DNS_LABEL_RE.match(name):
        name = f"sandbox-{suffix}"[:63].rstrip("-")
    return name


def _preview_url(*, claim_name: str, base_domain: str, scheme: str) -> str:
    scheme = (scheme or "https").strip()
    base_domain = base_domain.strip().lstrip(".")
    return f"{scheme}://{claim_name}.{base_domain}/"


def _sandbox_ready(sandbox_obj: dict[str, Any]) -> bool:
    status = sandbox_obj.get("status", {}) or {}
    for cond in status.get("conditions", []) or []:
        if cond.get("type") == "Ready" and cond.get("status") in ("True", True):
            return True
    return False


def _condition_summary(sandbox_obj: dict[str, Any] | None) -> str:
    if not isinstance(sandbox_obj, dict):
        return "no sandbox object"
    status = sandbox_obj.get("status", {}) or {}
    parts: list[str] = []
    for cond in status.get("conditions", []) or []:
        if not isinstance(cond, dict):
            continue
        parts.append(
            f"{cond.get('type')}={cond.get('status')} ({cond.get('reason') or 'no reason'})"
        )
    return ", ".join(parts) or "no conditions"


def _build_api_client(settings: SandboxSettings) -> Any:
    from kubernetes import client, config  # type: ignore

    if settings.credential_mode == "token":
        cfg = client.Configuration()
        cfg.host = settings.k8s_api_host
        cfg.api_key = {"authorization": settings.k8s_api_token}
        cfg.api_key_prefix = {"authorization": "Bearer"}
        cfg.verify_ssl = settings.k8s_verify_ssl
        return client.ApiClient(cfg)

    # In-cluster first; fall back to local kubeconfig (useful for dev).
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    return client.ApiClient()


class K8sClaimClient:
    """SandboxClaim lifecycle: create, wait for Ready, delete."""

    def __init__(self, settings: SandboxSettings) -> None:
        from kubernetes import client, watch  # type: ignore

        self.namespace = settings.k8s_namespace
        self.template_name = settings.k8s_template_name
        self.ready_timeout_s = settings.k8s_ready_timeout_s
        self.session_timeout_s = settings.session_timeout_s
        self._client = client
        self._watch_cls = watch.Watch
        self.custom_objects_api = client.CustomObjectsApi(_build_api_client(settings))

    def create_claim(self, claim_name: str) -> None:
        shutdown_at = utc_now() + timedelta(seconds=self.session_timeout_s)
        manifest = {
            "apiVersion": f"{CLAIM_API_GROUP}/{CLAIM_API_VERSION}",
            "kind": "SandboxClaim",
            "metadata": {"name": claim_name},
            "spec": {
                "sandboxTemplateRef": {"name": self.template_name},
                "lifecycle": {
                    "shutdownTime": shutdown_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "shutdownPolicy": "Delete",
                },
            },
        }
        self.custom_objects_api.create_namespaced_custom_object(
            group=CLAIM_API_GROUP,
            version=CLAIM_API_VERSION,
            namespace=self.namespace,
            plural=CLAIM_PLURAL_NAME,
            body=manifest,
        )

    def claim_exists(self, claim_name: str) -> bool:
        try:
            self.custom_objects_api.get_namespaced_custom_object(
                group=CLAIM_API_GROUP,
                version=CLAIM_API_VERSION,
                namespace=self.namespace,
                plural=CLAIM_PLURAL_NAME,
                name=claim_name,
            )
            return True
        except self._client.ApiException as e:
            if e.status == 404:
                return False
            raise

    def delete_claim(self, claim_name: str) -> bool:
        """Delete a SandboxClaim. Returns False if it was already gone."""
        try:
            self.custom_objects_api.delete_namespaced_custom_object(
                group=CLAIM_API_GROUP,
                version=CLAIM_API_VERSION,
                namespace=self.namespace,
                plural=CLAIM_PLURAL_NAME,
                name=claim_name,
                body=self._client.V1DeleteOptions(propagation_policy="Foreground"),
            )
            return True
        except self._client.ApiException as e:
            if e.status == 404:
                return False
            raise

    def _get_sandbox(self, claim_name: str) -> dict[str, Any] | None:
        try:
            obj = self.custom_objects_api.get_namespaced_custom_object(
                group=SANDBOX_API_GROUP,
                version=SANDBOX_API_VERSION,
                namespace=self.namespace,
                plural=SANDBOX_PLURAL_NAME,
                name=claim_name,
            )
        except Exception:
            return None
        return obj if isinstance(obj, dict) else None

    def wait_for_ready(self, claim_name: str) -> None:
        # Warm-pool sandboxes are often Ready before we get here.
        sandbox = self._get_sandbox(claim_name)
        if sandbox is not None and _sandbox_ready(sandbox):
            return

        w = self._watch_cls()
        start = time.time()
        for event in w.stream(
            func=self.custom_objects_api.list_namespaced_custom_object,
            namespace=self.namespace,
            group=SANDBOX_API_GROUP,
            version=SANDBOX_API_VERSION,
            plural=SANDBOX_PLURAL_NAME,
            field_selector=f"metadata.name={claim_name}",
            timeout_seconds=self.ready_timeout_s,
        ):
            obj = event.get("object") if isinstance(event, dict) else None
            if isinstance(obj, dict) and _sandbox_ready(obj):
                w.stop()
                return
            if time.time() - start > self.ready_timeout_s:
                w.stop()
                break

        sandbox = self._get_sandbox(claim_name)
        if sandbox is not None and _sandbox_ready(sandbox):
            return
        raise ProvisioningError(
            f"Timed out after {self.ready_timeout_s}s waiting for sandbox "
            f"'{claim_name}' to become Ready: {_condition_summary(sandbox)}"
        )


class K8sSandboxProvider(BaseSandboxProvider):
    """Sandbox provider backed by agent-sandbox claims and the in-pod runtime API.

    The runtime service inside each sandbox pod exposes:
      - POST /execute (and /exec as an alias on older images)
      - POST /write_b64
    """

    provider_name = "k8s"

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        claims: K8sClaimClient | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(settings, sleep=sleep)
        self._claims = claims
        self._http = session or requests.Session()

    @property
    def claims(self) -> K8sClaimClient:
        # Loading cluster credentials is deferred until the first sandbox is created.
        if self._claims is None:
            self._claims = K8sClaimClient(self.settings)
        return self._claims

    # ---- Backend hooks

    def _open(self) -> tuple[Any, SandboxInfo]:
        if not self.settings.preview_base_domain:
            raise ProvisioningError(
                "PREVIEW_BASE_DOMAIN is required for SANDBOX_PROVIDER=k8s"
            )
        claims = self.claims
        claim_name = _dns_safe_claim_name(self.settings.k8s_claim_prefix)
        try:
            claims.create_claim(claim_name)
        except Exception as exc:
            raise ProvisioningError(
                f"Sandbox backend rejected claim '{claim_name}': {exc}"
            ) from exc

        try:
            claims.wait_for_ready(claim_name)
        except Exception as exc:
            try:
                claims.delete_claim(claim_name)
            except Exception:
                logger.warning(
                    "Failed to clean up claim %s after failed readiness wait",
                    claim_name,
                    exc_info=True,
                )
            if isinstance(exc, ProvisioningError):
                raise
            raise ProvisioningError(
                f"Sandbox '{claim_name}' did not become ready: {exc}"
            ) from exc

        info = SandboxInfo(
            sandbox_id=claim_name,
            url=_preview_url(
                claim_name=claim_name,
                base_domain=self.settings.preview_base_domain,
                scheme=self.settings.preview_scheme,
            ),
            provider=self.provider_name,
            created_at=utc_now(),
        )
        return claim_name, info

    def _close(self, handle: Any) -> None:
        if not self.claims.delete_claim(str(handle)):
            logger.info("Claim %s was already gone", handle)

    def _exec(self, argv: Sequence[str], *, cwd: str) -> CommandResult:
        # The runtime splits the command with shlex and runs it without a shell.
        inner = f"cd {shlex.quote(cwd)} && {shlex.join(argv)}"
        command = shlex.join(["sh", "-c", inner])
        timeout_s = self.settings.exec_timeout_s
        payload = {"command": command}
        try:
            resp = self._request("POST", "execute", json=payload, timeout=timeout_s)
        except requests.HTTPError as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            if status not in (404, 405):
                raise
            resp = self._request("POST", "exec", json=payload, timeout=timeout_s)

        data = resp.json()
        raw_code = data.get("exit_code")
        return CommandResult(
            stdout=materialize_output(data.get("stdout")),
            stderr=materialize_output(data.get("stderr")),
            exit_code=int(raw_code) if raw_code is not None else -1,
        )

    def _bulk_write(self, full_path: str, payload: bytes) -> None:
        rel = posixpath.relpath(full_path, self.root_dir)
        if rel.startswith(".."):
            raise ValueError(f"{full_path} is outside {self.root_dir}")
        content_b64 = base64.b64encode(payload).decode("ascii")
        self._request("POST", "write_b64", json={"path": rel, "content_b64": content_b64})

    def _is_expired_error(self, exc: BaseException) -> bool:
        if isinstance(exc, requests.HTTPError):
            response = getattr(exc, "response", None)
            if getattr(response, "status_code", None) == 410:
                return True
            try:
                body = response.json() if response is not None else None
            except Exception:
                body = None
            if isinstance(body, dict):
                err = body.get("error")
                code = err.get("code") if isinstance(err, dict) else body.get("code")
                if code in EXPIRED_ERROR_CODES:
                    return True
            return False

        if isinstance(exc, requests.ConnectionError) and self._handle is not None:
            # Only a confirmed missing claim counts; a flaky network does not.
            try:
                return not self.claims.claim_exists(str(self._handle))
            except Exception:
                return False
        return False

    def _describe_failure(self, exc: BaseException) -> tuple[int, str]:
        if isinstance(exc, requests.Timeout):
            return 124, f"Command timed out after {self.settings.exec_timeout_s}s: {exc}"
        return super()._describe_failure(exc)

    # ---- Operations

    def read_file(self, path: str) -> str:
        """Read through GET /download; exec output is size-capped by the runtime."""
        self._require_handle()
        full_path = self.resolve_path(path)
        rel = posixpath.relpath(full_path, self.root_dir)
        if rel.startswith(".."):
            content = super().read_file(path)
            if content.endswith(EXEC_TRUNCATION_MARKER):
                raise ReadError(
                    f"Failed to read file: output truncated by the runtime ({full_path})",
                    path=path,
                )
            return content

        try:
            resp = self._request("GET", f"download/{rel}")
        except Exception as exc:
            if self._is_expired_error(exc):
                raise SandboxExpiredError(sandbox_id=str(self._handle)) from exc
            status = getattr(getattr(exc, "response", None), "status_code", None)
            detail = "file not found" if status == 404 else str(exc)
            raise ReadError(
                f"Failed to read file: {detail}", path=path, stderr=str(exc)
            ) from exc
        return materialize_output(resp.content)

    # ---- Runtime API helpers

    def runtime_base_url(self, claim_name: str) -> str:
        return self.settings.k8s_runtime_url_template.format(
            claim=claim_name,
            namespace=self.settings.k8s_namespace,
            port=self.settings.k8s_runtime_port,
        )

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        base = self.runtime_base_url(str(self._handle)).rstrip("/")
        url = f"{base}/{path.lstrip('/')}"
        timeout = kwargs.pop("timeout", self.settings.request_timeout_s)
        resp = self._http.request(method, url, timeout=timeout, **kwargs)
        resp.raise_for_status()
        return resp
