from __future__ import annotations
import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from lra.common.errors import ConfigurationError


_LAB_THRESHOLD_POLICIES = {"unclassified", "normal"}
_LAB_UNRESOLVED_POLICIES = {"unclassified", "skip"}


@dataclass(frozen=True)
class ClassificationSettings:
    labs_missing_threshold: str = "unclassified"  # unclassified/normal
    labs_unresolved_code: str = "unclassified"  # unclassified/skip
    use_observation_reference_range: bool = False


@dataclass(frozen=True)
class RunSettings:
    fhir_base: str
    group_id: str
    recipient: str
    poll_interval_s: float = 5.0
    poll_deadline_s: Optional[float] = None
    conflict_retry_delay_s: float = 30.0
    conflict_retries: int = 1
    request_timeout_s: float = 60.0
    classification: ClassificationSettings = ClassificationSettings()


@dataclass(frozen=True)
class AuthSettings:
    client_id: str
    token_url: str
    private_key_path: str
    key_id: str | None
    scope: str


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int
    user: str | None
    password: str | None
    sender: str
    secure: bool  # True = implicit TLS, False = STARTTLS


@dataclass(frozen=True)
class ThresholdSource:
    kind: str  # file/adls
    path: str
    account: str | None = None
    container: str | None = None


def repo_root() -> Path:
    # src/lra/common/config.py -> repo root
    return Path(__file__).resolve().parents[3]


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_base_config(root: Path) -> Dict[str, Any]:
    return load_yaml(root / "configs" / "base.yaml")


def _env(name: str) -> str:
    return (os.getenv(name, "") or "").strip()


def _require_env(name: str) -> str:
    val = _env(name)
    if not val:
        raise ConfigurationError(f"Missing required environment variable {name}", {"env": name})
    return val


def _bool(v: Any, default: bool = False) -> bool:
    if isinstance(v, bool):
        return v
    s = str(v or "").strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _number(section: Dict[str, Any], key: str, default: Any, cast=float):
    raw = section.get(key, default)
    try:
        return cast(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"export.{key} must be a number (got '{raw}')", {"key": f"export.{key}"})


def read_classification_settings(base_cfg: Dict[str, Any]) -> ClassificationSettings:
    cls = base_cfg.get("classification") or {}

    labs_missing = str(cls.get("labs_missing_threshold", "unclassified")).strip().lower()
    if labs_missing not in _LAB_THRESHOLD_POLICIES:
        raise ConfigurationError(
            f"classification.labs_missing_threshold must be one of {sorted(_LAB_THRESHOLD_POLICIES)} (got '{labs_missing}')"
        )
    labs_unresolved = str(cls.get("labs_unresolved_code", "unclassified")).strip().lower()
    if labs_unresolved not in _LAB_UNRESOLVED_POLICIES:
        raise ConfigurationError(
            f"classification.labs_unresolved_code must be one of {sorted(_LAB_UNRESOLVED_POLICIES)} (got '{labs_unresolved}')"
        )
    return ClassificationSettings(
        labs_missing_threshold=labs_missing,
        labs_unresolved_code=labs_unresolved,
        use_observation_reference_range=_bool(cls.get("use_observation_reference_range", False)),
    )


def read_run_settings_from_env(base_cfg: Dict[str, Any]) -> RunSettings:
    fhir = base_cfg["fhir"]
    export = base_cfg.get("export") or {}
    cls = read_classification_settings(base_cfg)

    deadline = export.get("poll_deadline_s")
    retries = _number(export, "conflict_retries", 1, cast=int)
    if retries < 0:
        raise ConfigurationError(f"export.conflict_retries must be >= 0 (got {retries})")

    return RunSettings(
        fhir_base=_require_env(fhir["base_url_env"]).rstrip("/"),
        group_id=_require_env(fhir["group_id_env"]),
        recipient=_require_env(base_cfg["notify"]["recipient_env"]),
        poll_interval_s=_number(export, "poll_interval_s", 5),
        poll_deadline_s=_number(export, "poll_deadline_s", None) if deadline is not None else None,
        conflict_retry_delay_s=_number(export, "conflict_retry_delay_s", 30),
        conflict_retries=retries,
        request_timeout_s=_number(export, "request_timeout_s", 60),
        classification=cls,
    )


def read_auth_settings_from_env(base_cfg: Dict[str, Any]) -> AuthSettings:
    auth = base_cfg["auth"]
    key_env = auth.get("key_id_env")
    return AuthSettings(
        client_id=_require_env(auth["client_id_env"]),
        token_url=_require_env(auth["token_url_env"]),
        private_key_path=_require_env(auth["private_key_path_env"]),
        key_id=(_env(key_env) or None) if key_env else None,
        scope=str(auth.get("scope", "system/*.read")),
    )


def read_smtp_settings_from_env(base_cfg: Dict[str, Any]) -> SmtpSettings:
    smtp = base_cfg["notify"]["smtp"]
    host = _require_env(smtp["host_env"])
    port_raw = _env(smtp["port_env"])
    try:
        port = int(port_raw) if port_raw else int(smtp.get("default_port", 587))
    except ValueError:
        raise ConfigurationError(f"{smtp['port_env']} must be an integer (got '{port_raw}')")

    user = _env(smtp["user_env"]) or None
    sender = _env(smtp["sender_env"]) or user
    if not sender:
        raise ConfigurationError(
            f"Set {smtp['sender_env']} or {smtp['user_env']} so the report has a From address"
        )

    return SmtpSettings(
        host=host,
        port=port,
        user=user,
        password=_env(smtp["password_env"]) or None,
        sender=sender,
        secure=_bool(_env(smtp["secure_env"]), default=False),
    )


def read_threshold_source_from_env(base_cfg: Dict[str, Any]) -> ThresholdSource:
    th = base_cfg["thresholds"]
    kind = (_env(th.get("source_env", "")) or th.get("default_source", "file")).lower()

    if kind == "file":
        return ThresholdSource(kind="file", path=str(th["file"]["path"]))
    if kind == "adls":
        adls = th["adls"]
        return ThresholdSource(
            kind="adls",
            path=str(adls["path"]),
            account=_require_env(adls["account_env"]),
            container=_env(adls.get("container_env", "")) or adls.get("default_container", "runbooks"),
        )
    raise ConfigurationError(f"Threshold source must be file or adls (got '{kind}')")


def read_logging_from_env(base_cfg: Dict[str, Any]) -> tuple[str, str]:
    lg = base_cfg.get("logging") or {}
    level = _env(lg.get("level_env", "LOG_LEVEL")) or "INFO"
    root = _env(lg.get("root_env", "LOG_ROOT")) or lg.get("default_root", "logs")
    return root, level.upper()
