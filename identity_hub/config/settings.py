"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                print(f"[settings] ✓ Loaded {secret_name} from /run/secrets")
                return secret_value
        except OSError as e:
            print(f"[settings] ✗ Failed to read /run/secrets/{secret_name}: {e}")

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            return secret_value

    return None


def _get_or_generate(var_name: str, demo_default: Optional[str] = None, required: bool = True, demo_mode: bool = False) -> str:
    """Get environment variable or use demo default."""
    value = os.environ.get(var_name)
    if value:
        return value

    if demo_mode and demo_default is not None:
        print(f"[demo-mode] Using default for {var_name}")
        return demo_default

    if not required:
        return ""

    raise RuntimeError(f"Environment variable {var_name} is required in production mode.")


def _env_bool(var_name: str, default: bool) -> bool:
    return os.environ.get(var_name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(var_name: str, default: int) -> int:
    raw = os.environ.get(var_name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {var_name} must be an integer, got {raw!r}")


def _env_float(var_name: str, default: float) -> float:
    raw = os.environ.get(var_name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {var_name} must be a number, got {raw!r}")


def _env_list(var_name: str, default: str) -> list[str]:
    return [
        item.strip().lower()
        for item in os.environ.get(var_name, default).split(",")
        if item.strip()
    ]


SUPPORTED_TRANSPORTS = {"plain", "ldaps", "starttls"}


@dataclass
class DirectorySettings:
    """Connection and credential-change settings for the enterprise directory."""
    host: str = "localhost"
    base_dn: str = "DC=example,DC=local"
    domain: str = "EXAMPLE"
    port: int = 389
    tls_port: int = 636

    # Ordered transports tried for binds and searches
    transports: list[str] = field(default_factory=lambda: ["ldaps", "starttls", "plain"])
    tls_verify: bool = True

    # Service account used for roster searches
    service_bind_dn: str = ""
    service_bind_password: str = ""

    # Administrative account used for password resets (optional)
    admin_bind_dn: str = ""
    admin_bind_password: str = ""

    # Timeouts in seconds
    auth_timeout: float = 5.0
    search_timeout: float = 15.0
    change_timeout: float = 10.0
    size_limit: int = 1000

    # Default mail domain when the entry has no mail attribute
    email_domain: str = "example.local"

    # Out-of-process privileged helper (argv prefix, empty disables)
    helper_command: list[str] = field(default_factory=list)
    helper_timeout: float = 20.0

    # External HTTP change API (empty URL disables)
    change_api_url: str = ""
    change_api_token: str = ""

    @property
    def upn_suffix(self) -> str:
        """DNS-style suffix derived from the DC components of the base DN."""
        parts = [
            rdn.split("=", 1)[1].strip()
            for rdn in self.base_dn.split(",")
            if rdn.strip().upper().startswith("DC=")
        ]
        return ".".join(parts).lower()


@dataclass
class MatchingSettings:
    """Fuzzy matching thresholds.

    Login-time and batch thresholds differ on purpose: login favours availability,
    batch reconciliation favours precision. Both are tunable.
    """
    login_threshold: int = 70
    batch_threshold: int = 80
    exact_score: int = 100
    short_name_length: int = 10
    short_name_min_score: int = 90
    long_name_length: int = 20
    long_name_min_score: int = 75
    default_min_score: int = 85
    token_match_min_score: int = 85
    duplicate_threshold: int = 85
    login_requires_confidence: bool = False


@dataclass
class AppConfig:
    """Application configuration container."""
    # Mode
    demo_mode: bool

    # Flask
    secret_key: str

    directory: DirectorySettings = field(default_factory=DirectorySettings)
    matching: MatchingSettings = field(default_factory=MatchingSettings)

    # Reconciliation
    roster_cache_ttl: float = 300.0
    local_email_domain: str = "example.local"
    account_store_path: str = ""
    erp_roster_path: str = ""
    permission_matrix_path: str = ""

    # Passwords
    password_policy_preset: str = "strict"
    bcrypt_rounds: int = 10

    # Access tokens
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_expiry_minutes: int = 480

    # Sync API
    sync_api_token: str = ""

    # Audit
    audit_log_signing_key: str = ""


def _load_directory_settings(demo_mode: bool) -> DirectorySettings:
    """Read directory settings; secrets come from /run/secrets first."""
    host = _get_or_generate("DIRECTORY_HOST", demo_default="localhost", demo_mode=demo_mode)
    base_dn = _get_or_generate("DIRECTORY_BASE_DN", demo_default="DC=example,DC=local", demo_mode=demo_mode)
    domain = os.environ.get("DIRECTORY_DOMAIN", "").strip()
    if not domain:
        # First DC component is the usual NetBIOS name
        first_dc = next(
            (rdn.split("=", 1)[1] for rdn in base_dn.split(",") if rdn.strip().upper().startswith("DC=")),
            "",
        )
        domain = first_dc.strip().upper()

    transports = _env_list("DIRECTORY_TRANSPORTS", "ldaps,starttls,plain")
    unknown = [name for name in transports if name not in SUPPORTED_TRANSPORTS]
    if unknown:
        raise RuntimeError(f"Unsupported DIRECTORY_TRANSPORTS entries: {', '.join(unknown)}")
    if not transports:
        raise RuntimeError("DIRECTORY_TRANSPORTS must name at least one transport")

    service_bind_password = _load_secret_from_file(
        "directory_service_bind_password",
        "DIRECTORY_SERVICE_BIND_PASSWORD",
    ) or ""
    admin_bind_password = _load_secret_from_file(
        "directory_admin_bind_password",
        "DIRECTORY_ADMIN_BIND_PASSWORD",
    ) or ""
    change_api_token = _load_secret_from_file(
        "directory_change_api_token",
        "DIRECTORY_CHANGE_API_TOKEN",
    ) or ""

    helper_command = os.environ.get("DIRECTORY_HELPER_COMMAND", "").split()

    return DirectorySettings(
        host=host,
        base_dn=base_dn,
        domain=domain,
        port=_env_int("DIRECTORY_PORT", 389),
        tls_port=_env_int("DIRECTORY_TLS_PORT", 636),
        transports=transports,
        tls_verify=_env_bool("DIRECTORY_TLS_VERIFY", True),
        service_bind_dn=os.environ.get("DIRECTORY_SERVICE_BIND_DN", ""),
        service_bind_password=service_bind_password,
        admin_bind_dn=os.environ.get("DIRECTORY_ADMIN_BIND_DN", ""),
        admin_bind_password=admin_bind_password,
        auth_timeout=_env_float("DIRECTORY_AUTH_TIMEOUT", 5.0),
        search_timeout=_env_float("DIRECTORY_SEARCH_TIMEOUT", 15.0),
        change_timeout=_env_float("DIRECTORY_CHANGE_TIMEOUT", 10.0),
        size_limit=_env_int("DIRECTORY_SIZE_LIMIT", 1000),
        email_domain=os.environ.get("DIRECTORY_EMAIL_DOMAIN", "").strip() or DirectorySettings(base_dn=base_dn).upn_suffix,
        helper_command=helper_command,
        helper_timeout=_env_float("DIRECTORY_HELPER_TIMEOUT", 20.0),
        change_api_url=os.environ.get("DIRECTORY_CHANGE_API_URL", "").strip(),
        change_api_token=change_api_token,
    )


def _load_matching_settings() -> MatchingSettings:
    return MatchingSettings(
        login_threshold=_env_int("MATCH_LOGIN_THRESHOLD", 70),
        batch_threshold=_env_int("MATCH_BATCH_THRESHOLD", 80),
        short_name_min_score=_env_int("MATCH_SHORT_NAME_MIN_SCORE", 90),
        long_name_min_score=_env_int("MATCH_LONG_NAME_MIN_SCORE", 75),
        default_min_score=_env_int("MATCH_DEFAULT_MIN_SCORE", 85),
        token_match_min_score=_env_int("MATCH_TOKEN_MIN_SCORE", 85),
        duplicate_threshold=_env_int("MATCH_DUPLICATE_THRESHOLD", 85),
        login_requires_confidence=_env_bool("MATCH_LOGIN_REQUIRES_CONFIDENCE", False),
    )


def load_settings() -> AppConfig:
    """Load application settings from environment and /run/secrets."""
    demo_mode = os.environ.get("DEMO_MODE", "false").lower() == "true"

    # ─────────────────────────────────────────────────────────────────────────
    # Secrets: /run/secrets > environment > demo defaults
    # ─────────────────────────────────────────────────────────────────────────
    secret_key = _load_secret_from_file("flask_secret_key", "FLASK_SECRET_KEY")
    if not secret_key:
        if not demo_mode:
            raise RuntimeError("FLASK_SECRET_KEY not found in /run/secrets or environment")
        secret_key = secrets.token_urlsafe(48)
        print("[demo-mode] Generated temporary FLASK_SECRET_KEY")

    jwt_secret = _load_secret_from_file("jwt_secret", "JWT_SECRET")
    if not jwt_secret:
        if not demo_mode:
            raise RuntimeError("JWT_SECRET not found in /run/secrets or environment")
        jwt_secret = os.environ.get("JWT_SECRET_DEMO", "demo-jwt-secret-change-in-production")
        print("[demo-mode] Using demo JWT_SECRET")

    sync_api_token = _load_secret_from_file("sync_api_token", "SYNC_API_TOKEN") or ""
    if not sync_api_token and demo_mode:
        sync_api_token = os.environ.get("SYNC_API_TOKEN_DEMO", "demo-sync-token")

    audit_log_signing_key = _load_secret_from_file("audit_log_signing_key", "AUDIT_LOG_SIGNING_KEY")
    if audit_log_signing_key:
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key
    elif demo_mode:
        audit_log_signing_key = os.environ.get("AUDIT_LOG_SIGNING_KEY_DEMO", "demo-audit-signing-key-change-in-production")
        os.environ["AUDIT_LOG_SIGNING_KEY"] = audit_log_signing_key
        print(f"[demo-mode] Using demo AUDIT_LOG_SIGNING_KEY: {audit_log_signing_key[:20]}...")

    directory = _load_directory_settings(demo_mode)
    matching = _load_matching_settings()

    password_policy_preset = os.environ.get("PASSWORD_POLICY_PRESET", "strict").strip().lower()
    if password_policy_preset not in {"strict", "relaxed"}:
        raise RuntimeError(f"PASSWORD_POLICY_PRESET must be 'strict' or 'relaxed', got {password_policy_preset!r}")

    mode_label = "DEMO" if demo_mode else "PRODUCTION"
    print(f"[settings] Mode={mode_label}; directory={directory.host}; transports={','.join(directory.transports)}")

    if demo_mode:
        print("[settings] WARNING: Demo credentials in use. Do not deploy with these defaults.")

    return AppConfig(
        demo_mode=demo_mode,
        secret_key=secret_key,
        directory=directory,
        matching=matching,
        roster_cache_ttl=_env_float("ROSTER_CACHE_TTL", 300.0),
        local_email_domain=os.environ.get("LOCAL_EMAIL_DOMAIN", "").strip() or directory.email_domain,
        account_store_path=os.environ.get("ACCOUNT_STORE_PATH", ".runtime/accounts.json"),
        erp_roster_path=os.environ.get("ERP_ROSTER_PATH", ".runtime/erp-roster.json"),
        permission_matrix_path=os.environ.get("PERMISSION_MATRIX_PATH", ""),
        password_policy_preset=password_policy_preset,
        bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 10),
        jwt_secret=jwt_secret,
        jwt_algorithm=os.environ.get("JWT_ALGORITHM", "HS256"),
        jwt_expiry_minutes=_env_int("JWT_EXPIRY_MINUTES", 480),
        sync_api_token=sync_api_token,
        audit_log_signing_key=audit_log_signing_key or "",
    )
