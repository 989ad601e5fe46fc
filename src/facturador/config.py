from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo

import platformdirs
import yaml
from dotenv import load_dotenv

APP_NAME = "facturador"

KEYRING_SERVICE = "facturador"
KEYRING_USERNAME = "cert-pfx-password"


def _resolve_config_dir_for_dotenv() -> Path | None:
    """Resolve config dir for .env loading without depending on env vars from .env itself.

    Only checks sources available before .env is loaded (shell env var,
    dev layout, an existing platformdirs directory).
    """
    from_env = os.environ.get("FACTURADOR_CONFIG_DIR")
    if from_env:
        return Path(from_env)
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / "config"
    if candidate.is_dir():
        return candidate
    pd = Path(platformdirs.user_config_dir(APP_NAME))
    if pd.is_dir():
        return pd
    return None


# Load .env: cwd first (highest priority), then config dir (won't override)
load_dotenv()
_cfg_dir = _resolve_config_dir_for_dotenv()
if _cfg_dir is not None:
    load_dotenv(_cfg_dir / ".env")


def _resolve_dir(env_var: str, default_subdir: str, kind: str) -> Path:
    """Resolve a directory from env var, repo layout, or platform default.

    Priority: 1) env var, 2) dev repo layout, 3) platformdirs user directory.
    """
    from_env = os.environ.get(env_var)
    if from_env:
        return Path(from_env)
    # Development layout: src/facturador/config.py -> ../../.. = project root
    project_root = Path(__file__).resolve().parent.parent.parent
    candidate = project_root / default_subdir
    if candidate.is_dir():
        return candidate
    if kind == "config":
        return Path(platformdirs.user_config_dir(APP_NAME))
    return Path(platformdirs.user_data_dir(APP_NAME))


def get_config_dir() -> Path:
    """Resolve config directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FACTURADOR_CONFIG_DIR", "config", kind="config")


def get_data_dir() -> Path:
    """Resolve data directory. Re-evaluated on each call to pick up env changes."""
    return _resolve_dir("FACTURADOR_DATA_DIR", "data", kind="data")


FACTURAE_NS = "http://www.facturae.gob.es/formato/Versiones/Facturae_3_2_2.xml"
FACTURAE_VERSION = "3.2.2"

MADRID = ZoneInfo("Europe/Madrid")

ENDPOINTS = {
    "pruebas": "https://prewww2.aeat.es/wlpl/TIKE-CONT-PREPRO/ValidarRegistrosFacturacion",
    "produccion": "https://prewww2.aeat.es/wlpl/TIKE-CONT/ValidarRegistrosFacturacion",
}

AEAT_TIMEOUT = 30


def get_endpoint(env: str) -> str:
    """Return the Verifactu endpoint for *env*, honouring VERIFACTU_ENDPOINT_<ENV>."""
    override = os.environ.get(f"VERIFACTU_ENDPOINT_{env.upper()}")
    if override:
        return override
    return ENDPOINTS[env]


# --- Keyring helpers ---


def _get_keyring_password() -> str | None:
    """Try to get the certificate password from the OS keyring.

    Returns None on any failure (no backend, not stored, dbus errors, etc.).
    """
    try:
        import keyring

        return keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)
    except Exception:
        return None


def _set_keyring_password(password: str) -> bool:
    """Store the certificate password in the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, password)
        return True
    except Exception:
        return False


def _delete_keyring_password() -> bool:
    """Remove the certificate password from the OS keyring. Returns True on success."""
    try:
        import keyring

        keyring.delete_password(KEYRING_SERVICE, KEYRING_USERNAME)
        return True
    except Exception:
        return False


# --- Certificate access ---


def get_cert_path() -> str:
    """Return the path to the .pfx certificate from CERT_PFX_PATH env var.

    Raises KeyError if the variable is not set.
    """
    return os.environ["CERT_PFX_PATH"]


def get_cert_password() -> str:
    """Return the certificate password.

    Priority: 1) CERT_PFX_PASSWORD env var, 2) OS keyring.
    Raises KeyError if neither source has the password.
    """
    pwd = os.environ.get("CERT_PFX_PASSWORD")
    if pwd is not None:
        return pwd
    pwd = _get_keyring_password()
    if pwd is not None:
        return pwd
    raise KeyError("CERT_PFX_PASSWORD")


# --- Settings ---


@dataclass(frozen=True)
class BillingSettings:
    """Operational knobs read from settings.yaml (every key optional)."""

    env: str = "pruebas"
    simulate: bool = False
    max_attempts: int = 5
    base_delay: float = 30.0
    max_delay: float = 3600.0
    backoff_factor: float = 2.0
    jitter: float = 0.25
    sent_timeout: float = 600.0
    lock_timeout: float = 10.0
    allocation_retries: int = 3
    workers: int = 4
    scheduler_interval: float = 60.0
    export_requires_ack: bool = True
    sign_facturae: bool = False
    facturae_dir: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> BillingSettings:
        verifactu = d.get("verifactu", {})
        retry = d.get("retry", {})
        facturae = d.get("facturae", {})
        env = str(verifactu.get("env", "pruebas"))
        if env not in ENDPOINTS:
            raise ValueError(f"Unknown environment '{env}', expected one of {sorted(ENDPOINTS)}")
        return cls(
            env=env,
            simulate=bool(verifactu.get("simulate", False)),
            max_attempts=int(retry.get("max_attempts", 5)),
            base_delay=float(retry.get("base_delay", 30.0)),
            max_delay=float(retry.get("max_delay", 3600.0)),
            backoff_factor=float(retry.get("backoff_factor", 2.0)),
            jitter=float(retry.get("jitter", 0.25)),
            sent_timeout=float(verifactu.get("sent_timeout", 600.0)),
            lock_timeout=float(d.get("lock_timeout", 10.0)),
            allocation_retries=int(d.get("allocation_retries", 3)),
            workers=int(d.get("workers", 4)),
            scheduler_interval=float(retry.get("scheduler_interval", 60.0)),
            export_requires_ack=bool(facturae.get("requires_ack", True)),
            sign_facturae=bool(facturae.get("sign", False)),
            facturae_dir=facturae.get("output_dir"),
        )


# --- YAML config ---


def load_yaml(path: Path) -> dict:
    """Load and parse a YAML file, returning the top-level dict."""
    return yaml.safe_load(path.read_text(encoding="utf-8")) or {}


def load_settings() -> BillingSettings:
    """Load settings.yaml from the config dir, falling back to defaults."""
    path = get_config_dir() / "settings.yaml"
    if not path.exists():
        return BillingSettings()
    return BillingSettings.from_dict(load_yaml(path))


def load_issuer(nif: str) -> dict:
    """Load an issuer configuration from config/issuers/{nif}.yaml."""
    return load_yaml(get_config_dir() / "issuers" / f"{nif}.yaml")


def list_issuers() -> list[str]:
    """Return sorted list of configured issuer NIFs (YAML file stems)."""
    issuers_dir = get_config_dir() / "issuers"
    if not issuers_dir.exists():
        return []
    return sorted(f.stem for f in issuers_dir.glob("*.yaml"))


def load_counterparty(name: str) -> dict:
    """Load a counterparty from config/counterparties/{name}.yaml."""
    return load_yaml(get_config_dir() / "counterparties" / f"{name}.yaml")


def load_tax_rates() -> dict | None:
    """Load tax_rates.yaml, or None when the default table should be used."""
    path = get_config_dir() / "tax_rates.yaml"
    if not path.exists():
        return None
    return load_yaml(path)


def get_ledger_dir(env: str) -> Path:
    """Return the ledger directory for the given environment."""
    return get_data_dir() / env / "ledger"


def get_facturae_dir(env: str, settings: BillingSettings | None = None) -> Path:
    """Return the Facturae output directory for the given environment."""
    if settings is not None and settings.facturae_dir:
        return Path(settings.facturae_dir)
    return get_data_dir() / env / "facturae"
