"""Shared names, ports and timeouts."""

DISTRIBUTION_NAME = "mcp-compose"
CONTAINER_PREFIX = "mcp-compose"
DEFAULT_NETWORK = "mcp-net"
DEFAULT_NETWORK_DRIVER = "bridge"

DEFAULT_PROXY_PORT = 9876
DEFAULT_DASHBOARD_PORT = 3001
DEFAULT_TASK_SCHEDULER_PORT = 8080
DEFAULT_MEMORY_PORT = 3001

DASHBOARD_CONTAINER = f"{CONTAINER_PREFIX}-dashboard"
TASK_SCHEDULER_CONTAINER = f"{CONTAINER_PREFIX}-task-scheduler"
MEMORY_CONTAINER = f"{CONTAINER_PREFIX}-memory"
MEMORY_POSTGRES_CONTAINER = f"{CONTAINER_PREFIX}-postgres-memory"
PROXY_CONTAINER = f"{CONTAINER_PREFIX}-http-proxy"

ACTIVITY_WEBHOOK_URL = f"http://{DASHBOARD_CONTAINER}:{DEFAULT_DASHBOARD_PORT}/api/activity"

MCP_PROTOCOL_VERSION = "2024-11-05"

# Seconds
HTTP_READ_TIMEOUT = 15
HTTP_IDLE_TIMEOUT = 60
INSPECTOR_RPC_TIMEOUT = 10
SESSION_IDLE_TIMEOUT = 30 * 60
SESSION_SWEEP_INTERVAL = 5 * 60
WS_WRITE_TIMEOUT = 5
WS_PING_INTERVAL = 30
WS_PING_TIMEOUT = 10
FANOUT_TIMEOUT = 3
FANOUT_WRITE_TIMEOUT = 5
METRICS_INTERVAL = 5
SERVICE_HEALTH_TIMEOUT = 30
SERVICE_HEALTH_INTERVAL = 1
STDIO_EXEC_TIMEOUT = 30
HOOK_TIMEOUT = 5 * 60
START_SETTLE_DELAY = 1

DEFAULT_LOG_TAIL = 50
DEFAULT_SSE_TAIL = 100
MAX_LOG_TAIL = 10000
FAILED_START_LOG_LINES = 50

ACTIVITY_MAILBOX_SIZE = 1000
ACTIVITY_CONTROL_MAILBOX_SIZE = 10
ACTIVITY_REPLAY_COUNT = 50
ACTIVITY_RETENTION_DAYS = 30

SENSITIVE_HOST_PATHS = ("/", "/etc", "/proc", "/sys", "/var/run", "/root", "/boot", "/dev")
DANGEROUS_CAPABILITIES = ("SYS_ADMIN", "NET_ADMIN", "SYS_PTRACE", "SYS_MODULE", "ALL")
ENGINE_SOCKETS = ("/var/run/docker.sock", "/run/docker.sock", "/run/podman/podman.sock")
