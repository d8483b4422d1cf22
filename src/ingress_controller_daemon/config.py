import os
import re
import socket
import uuid
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError
from .kube import ClusterConnection
from .scheme import Scheme, default_scheme

# Load environment variables from a .env file into the runtime environment
load_dotenv()

SERVICE_ACCOUNT_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"
DISABLED_BIND_ADDRESSES = ("", "0")


def _default_identity() -> str:
    return f"{socket.gethostname()}_{uuid.uuid4().hex[:8]}"


def _env_number(var: str, default, cast=float):
    """
    Numeric setting read when the Config is built.

    A value that does not parse leaves the default in place;
    validate_configuration reports it, so the error reaches the
    caller of create_config instead of failing at import.
    """
    def read():
        try:
            return cast(os.getenv(var, default))
        except ValueError:
            return cast(default)
    return field(default_factory=read)


@dataclass(frozen=True)
class Config:
    """
    Static configuration of the ingress controller daemon.

    All fields are populated from environment variables and type-cast as
    needed. Instances are immutable: the manager and every subsystem share
    the same Config read-only.

    Attributes:
        Logging:
            - logger_name: Root logger name; child loggers hang off it.
            - log_level: Log verbosity (e.g., DEBUG, INFO, WARNING).
            - log_file: Path to optional log file.
            - log_max_bytes: Log file size before rotation.
            - log_backup_count: Number of rotated backups to retain.
            - enable_gcp_logging: Also ship logs to Google Cloud Logging.
            - enable_structured_console: Output JSON to console for structured events.
            - enable_structured_file: Output JSON lines to a separate structured log file.
            - structured_log_file: Path to structured JSON log file.

        Cluster Connection:
            - kubeconfig: Kubeconfig path; unset means in-cluster configuration.
            - kube_context: Kubeconfig context to use.
            - api_server: API server URL overriding the kubeconfig.
            - api_timeout: Timeout for control-plane connectivity checks.

        Leader Election:
            - election: Enable leader election across replicas.
            - election_id: Name of the Lease object shared by all replicas.
            - election_namespace: Namespace of the Lease object.
            - identity: This replica's holder identity (POD_NAME).
            - lease_duration / renew_deadline / retry_period: Lease timing.
            - release_on_cancel: Release the lease on graceful shutdown.

        Endpoints:
            - probe_addr: Bind address for healthz/readyz ("0" disables).
            - metrics_addr: Bind address for metrics ("0" disables).

        Runtime Control:
            - graceful_shutdown_timeout: Seconds runnables get to stop.
            - watch_namespace: Namespace to watch; empty watches all.
            - ingress_class: Ingress class handled by this controller.
            - reconcile_workers: Concurrent reconcile workers.
            - connection_check_interval: Seconds between API server checks.
            - max_retries_connection: Retries before the connection is lost.
            - initial_backoff / max_backoff: Exponential backoff timing.

        Types:
            - scheme: Registry of resource kinds the controller understands.
    """
    # Logging
    logger_name: str = os.getenv('LOGGER_NAME', 'INGRESS_CONTROLLER').upper()
    log_level: str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_file: Optional[str] = os.getenv('LOG_FILE') or None
    log_max_bytes: int = _env_number('LOG_MAX_BYTES', 10 * 1024 * 1024, int)
    log_backup_count: int = _env_number('LOG_BACKUP_COUNT', 5, int)
    enable_gcp_logging: bool = os.getenv('ENABLE_GCP_LOGGING', 'false').lower() == 'true'
    enable_structured_console: bool = os.getenv('ENABLE_STRUCTURED_CONSOLE', 'false').lower() == 'true'
    enable_structured_file: bool = os.getenv('ENABLE_STRUCTURED_FILE', 'false').lower() == 'true'
    structured_log_file: Optional[str] = os.getenv('STRUCTURED_LOG_FILE') or None

    # Cluster connection
    kubeconfig: Optional[str] = os.getenv('KUBECONFIG') or None
    kube_context: Optional[str] = os.getenv('KUBE_CONTEXT') or None
    api_server: Optional[str] = os.getenv('APISERVER_HOST') or None
    api_timeout: int = _env_number('KUBE_API_TIMEOUT', 30, int)

    # Leader election
    election: bool = os.getenv('ENABLE_LEADER_ELECTION', 'true').lower() == 'true'
    election_id: str = os.getenv('ELECTION_ID', 'ingress-controller-leader')
    election_namespace: str = os.getenv('ELECTION_NAMESPACE', '')
    identity: str = os.getenv('POD_NAME') or _default_identity()
    lease_duration: float = _env_number('LEASE_DURATION_SECONDS', 15)
    renew_deadline: float = _env_number('RENEW_DEADLINE_SECONDS', 10)
    retry_period: float = _env_number('RETRY_PERIOD_SECONDS', 2)
    release_on_cancel: bool = os.getenv('LEADER_ELECTION_RELEASE_ON_CANCEL', 'true').lower() == 'true'

    # Probe and metrics listeners
    probe_addr: str = os.getenv('HEALTH_PROBE_BIND_ADDRESS', ':8081')
    metrics_addr: str = os.getenv('METRICS_BIND_ADDRESS', ':8080')

    # Runtime control
    graceful_shutdown_timeout: float = _env_number('GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS', 30)
    watch_namespace: str = os.getenv('WATCH_NAMESPACE', '')
    ingress_class: str = os.getenv('INGRESS_CLASS', 'haproxy')
    reconcile_workers: int = _env_number('RECONCILE_WORKERS', 1, int)
    connection_check_interval: float = _env_number('CONNECTION_CHECK_INTERVAL_SECONDS', 30)
    max_retries_connection: int = _env_number('MAX_RETRIES_CONNECTION', 5, int)
    initial_backoff: float = _env_number('INITIAL_BACKOFF_SECONDS', 1.0)
    max_backoff: float = _env_number('MAX_BACKOFF_SECONDS', 60.0)

    scheme: Scheme = field(default_factory=default_scheme, compare=False)

    @property
    def cluster_connection(self) -> ClusterConnection:
        in_cluster = not (self.kubeconfig or self.kube_context or self.api_server)
        return ClusterConnection(
            kubeconfig=self.kubeconfig,
            context=self.kube_context,
            api_server=self.api_server,
            in_cluster=in_cluster,
            timeout=self.api_timeout,
        )

    @property
    def resolved_election_namespace(self) -> str:
        return resolve_election_namespace(self.election_namespace)


def resolve_election_namespace(configured: str) -> str:
    """ELECTION_NAMESPACE, then POD_NAMESPACE, then the service-account namespace file."""
    if configured:
        return configured
    pod_namespace = os.getenv('POD_NAMESPACE', '')
    if pod_namespace:
        return pod_namespace
    try:
        with open(SERVICE_ACCOUNT_NAMESPACE_FILE) as f:
            return f.read().strip()
    except OSError:
        return ''


_BIND_RE = re.compile(r'^(?P<host>\[[0-9a-fA-F:.]+\]|[^:\s]*):(?P<port>\d{1,5})$')


def parse_bind_address(addr: str) -> Optional[Tuple[str, int]]:
    """
    Parse a "host:port" bind address.

    Returns:
        (host, port) with an empty host meaning all interfaces, or None when
        the listener is disabled ("" or "0").

    Raises:
        ValueError: If the address is malformed.
    """
    addr = (addr or '').strip()
    if addr in DISABLED_BIND_ADDRESSES:
        return None
    match = _BIND_RE.match(addr)
    if not match:
        raise ValueError(f"invalid bind address '{addr}', expected [host]:port")
    port = int(match.group('port'))
    if port > 65535:
        raise ValueError(f"invalid port in bind address '{addr}'")
    return match.group('host').strip('[]'), port


# Numeric settings and their accepted ranges
NUMERIC_RANGES = {
    'LOG_MAX_BYTES': (1024, 1073741824),  # 1 KB to 1 GB
    'LOG_BACKUP_COUNT': (1, 100),
    'KUBE_API_TIMEOUT': (1, 300),
    'LEASE_DURATION_SECONDS': (1, 600),
    'RENEW_DEADLINE_SECONDS': (1, 600),
    'RETRY_PERIOD_SECONDS': (0.1, 60),
    'GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS': (1, 3600),
    'RECONCILE_WORKERS': (1, 64),
    'CONNECTION_CHECK_INTERVAL_SECONDS': (1, 3600),
    'MAX_RETRIES_CONNECTION': (0, 20),
    'INITIAL_BACKOFF_SECONDS': (0.1, 60),
    'MAX_BACKOFF_SECONDS': (1, 600),
}

INTEGER_SETTINGS = frozenset({
    'LOG_MAX_BYTES', 'LOG_BACKUP_COUNT', 'KUBE_API_TIMEOUT',
    'RECONCILE_WORKERS', 'MAX_RETRIES_CONNECTION',
})


def validate_configuration(cfg: Config) -> list[str]:
    """
    Validates the loaded configuration for completeness, correctness, and consistency.

    This includes:
    - Numeric ranges of environment-provided numbers.
    - Lease timing consistency (retry < renew deadline < lease duration).
    - Election id and namespace when leader election is enabled.
    - Bind address syntax.
    - Kubeconfig file existence and readability.
    - The type registry.

    Args:
        cfg (Config): Parsed and populated configuration object.

    Returns:
        list[str]: A list of human-readable error strings. Empty list means validation passed.
    """
    errors: list[str] = []

    for var, (mn, mx) in NUMERIC_RANGES.items():
        raw = os.getenv(var)
        if not raw:
            continue
        integer = var in INTEGER_SETTINGS
        try:
            val = int(raw) if integer else float(raw)
        except ValueError:
            errors.append(f"{var} must be {'an integer' if integer else 'numeric'}, got '{raw}'")
            continue
        if not mn <= val <= mx:
            errors.append(f"{var} must be between {mn} and {mx}, got {val}")

    if cfg.election:
        if not cfg.election_id.strip():
            errors.append("ELECTION_ID must not be empty when leader election is enabled")
        if not cfg.resolved_election_namespace:
            errors.append("ELECTION_NAMESPACE could not be determined: set ELECTION_NAMESPACE "
                          "or POD_NAMESPACE, or run inside the cluster")
        if cfg.renew_deadline >= cfg.lease_duration:
            errors.append(f"RENEW_DEADLINE_SECONDS ({cfg.renew_deadline}) must be less than "
                          f"LEASE_DURATION_SECONDS ({cfg.lease_duration})")
        if cfg.retry_period >= cfg.renew_deadline:
            errors.append(f"RETRY_PERIOD_SECONDS ({cfg.retry_period}) must be less than "
                          f"RENEW_DEADLINE_SECONDS ({cfg.renew_deadline})")
        if not cfg.identity.strip():
            errors.append("POD_NAME must not be empty when leader election is enabled")

    if cfg.initial_backoff > cfg.max_backoff:
        errors.append(f"INITIAL_BACKOFF_SECONDS ({cfg.initial_backoff}) must not exceed "
                      f"MAX_BACKOFF_SECONDS ({cfg.max_backoff})")

    for name, value in (('HEALTH_PROBE_BIND_ADDRESS', cfg.probe_addr),
                        ('METRICS_BIND_ADDRESS', cfg.metrics_addr)):
        try:
            parse_bind_address(value)
        except ValueError as e:
            errors.append(f"Invalid {name}: {e}")

    if cfg.kubeconfig:
        if not os.path.isfile(cfg.kubeconfig):
            errors.append(f"invalid connection descriptor: kubeconfig not found: {cfg.kubeconfig}")
        elif not os.access(cfg.kubeconfig, os.R_OK):
            errors.append(f"invalid connection descriptor: kubeconfig not readable: {cfg.kubeconfig}")
    if cfg.api_server and not cfg.api_server.startswith(('http://', 'https://')):
        errors.append(f"invalid connection descriptor: APISERVER_HOST must be an http(s) URL, "
                      f"got '{cfg.api_server}'")

    errors.extend(f"invalid scheme: {problem}" for problem in cfg.scheme.validate())

    return errors


def create_config(ctx=None) -> Config:
    """
    Load and validate the static configuration.

    Args:
        ctx: Root execution context; used only for its logger.

    Returns:
        Config: Fully populated, validated configuration.

    Raises:
        ConfigError: With every validation problem found.
    """
    cfg = Config()
    errors = validate_configuration(cfg)
    if errors:
        raise ConfigError(errors)
    if ctx is not None:
        ctx.logger.debug(f"Static configuration loaded ({cfg.cluster_connection.describe()})")
    return cfg
