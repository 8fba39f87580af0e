from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_RUNTIME_URL_TEMPLATE = "http://{claim}.{namespace}.svc.cluster.local:{port}"


def _env_str(name: str, default: str = "") -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


@dataclass(frozen=True)
class SandboxSettings:
    backend: str = "k8s"
    session_timeout_s: int = 600
    preview_port: int = 5173
    root_dir: str = "/app"
    request_timeout_s: int = 60
    exec_timeout_s: int = 600

    package_manager: str = "npm"
    installer_flags: str = ""
    auto_restart_dev_server: bool = False

    dev_server_command: str = "npm run dev"
    dev_server_process: str = "vite"
    dev_server_log_path: str = "/tmp/vite.log"
    dev_server_settle_s: float = 7
    dev_server_kill_settle_s: float = 2

    diagnostics_log_lines: int = 20
    network_probe_timeout_s: int = 5

    k8s_namespace: str = "default"
    k8s_template_name: str = "vite-sandbox"
    k8s_claim_prefix: str = "sandbox"
    k8s_ready_timeout_s: int = 180
    k8s_runtime_port: int = 8888
    k8s_runtime_url_template: str = DEFAULT_RUNTIME_URL_TEMPLATE
    k8s_api_host: str = ""
    k8s_api_token: str = ""
    k8s_verify_ssl: bool = True

    preview_base_domain: str = ""
    preview_scheme: str = "https"

    local_base_dir: str = ""

    @classmethod
    def from_env(cls) -> SandboxSettings:
        return cls(
            backend=(_env_str("SANDBOX_PROVIDER", "k8s") or "k8s").lower(),
            session_timeout_s=max(1, _env_int("SANDBOX_SESSION_TIMEOUT_S", 600)),
            preview_port=_env_int("SANDBOX_PREVIEW_PORT", 5173),
            root_dir=_env_str("SANDBOX_ROOT_DIR", "/app") or "/app",
            request_timeout_s=max(1, _env_int("SANDBOX_REQUEST_TIMEOUT_S", 60)),
            exec_timeout_s=max(1, _env_int("SANDBOX_EXEC_TIMEOUT_S", 600)),
            package_manager=_env_str("SANDBOX_PACKAGE_MANAGER", "npm") or "npm",
            installer_flags=_env_str("NPM_FLAGS"),
            auto_restart_dev_server=_env_bool("AUTO_RESTART_VITE", default=False),
            dev_server_command=_env_str("SANDBOX_DEV_SERVER_CMD", "npm run dev")
            or "npm run dev",
            dev_server_process=_env_str("SANDBOX_DEV_SERVER_PROCESS", "vite") or "vite",
            dev_server_log_path=_env_str("SANDBOX_DEV_SERVER_LOG", "/tmp/vite.log")
            or "/tmp/vite.log",
            dev_server_settle_s=max(0, _env_int("SANDBOX_DEV_SERVER_SETTLE_S", 7)),
            dev_server_kill_settle_s=max(
                0, _env_int("SANDBOX_DEV_SERVER_KILL_SETTLE_S", 2)
            ),
            diagnostics_log_lines=max(1, _env_int("SANDBOX_DIAGNOSTICS_LOG_LINES", 20)),
            network_probe_timeout_s=max(
                1, _env_int("SANDBOX_NETWORK_PROBE_TIMEOUT_S", 5)
            ),
            k8s_namespace=_env_str("K8S_SANDBOX_NAMESPACE", "default") or "default",
            k8s_template_name=_env_str("K8S_SANDBOX_TEMPLATE_NAME", "vite-sandbox")
            or "vite-sandbox",
            k8s_claim_prefix=_env_str("K8S_SANDBOX_CLAIM_PREFIX", "sandbox") or "sandbox",
            k8s_ready_timeout_s=max(1, _env_int("K8S_SANDBOX_READY_TIMEOUT", 180)),
            k8s_runtime_port=_env_int("SANDBOX_RUNTIME_PORT", 8888),
            k8s_runtime_url_template=_env_str(
                "SANDBOX_RUNTIME_URL_TEMPLATE", DEFAULT_RUNTIME_URL_TEMPLATE
            )
            or DEFAULT_RUNTIME_URL_TEMPLATE,
            k8s_api_host=_env_str("K8S_API_HOST").rstrip("/"),
            k8s_api_token=_env_str("K8S_API_TOKEN"),
            k8s_verify_ssl=_env_bool("K8S_VERIFY_SSL", default=True),
            preview_base_domain=_env_str("PREVIEW_BASE_DOMAIN").lstrip("."),
            preview_scheme=_env_str("PREVIEW_SCHEME", "https") or "https",
            local_base_dir=_env_str("SANDBOX_LOCAL_BASE_DIR"),
        )

    @property
    def credential_mode(self) -> str:
        """Which backend credential mode applies.

        Token auth wins only when both host and token are configured; anything
        else uses the workload identity (in-cluster service account, or the
        local kubeconfig during development).
        """
        if self.k8s_api_host and self.k8s_api_token:
            return "token"
        return "service_account"

    @property
    def installer_flag_list(self) -> list[str]:
        return self.installer_flags.split()
