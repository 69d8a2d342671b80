"""
Core system constants.

Basic system constants that are used across multiple modules.

Only place true invariants here (fixed file names, defaults, bounds, etc.).
Resolved values live on RuntimeConfig; use that rather than reading these
defaults at request time.
"""

from __future__ import annotations


# Command-line defaults
DEFAULT_PORT = 80
DEFAULT_HTTPS_PORT = 443
DEFAULT_ETC_DIR = "/etc/esmd"
DEFAULT_CDN_DOMAIN = "cdn.esm.sh"
DEFAULT_LOG_DIR = "/var/log/esmd"
DEFAULT_BIND_HOST = "0.0.0.0"

# Script names that mark a development launch (`python main.py`)
DEV_ENTRY_NAMES = frozenset({"main.py", "main", "main.exe"})
DEV_ROOT_DIR = ".dev"

# Layout under the etc dir
BUILDS_DIR = "builds"
STORE_FILE = "esmd.db"
AUTOTLS_CACHE_DIR = "cache/autotls"
ACME_WEBROOT_DIR = "webroot"

# Layout under the log dir
MAIN_LOG_FILE = "main.log"
ACCESS_LOG_FILE = "access.log"
LOG_BUFFER_SIZE = 32 * 1024

# Filesystem permissions
DIRECTORY_MODE = 0o755
STORE_FILE_MODE = 0o666
PRIVATE_KEY_MODE = 0o600

# Persistent store
STORE_BUSY_TIMEOUT = 5.0  # seconds SQLite retries while the file is locked

# Node.js runtime
NODE_BINARY = "node"
NPM_BINARY = "npm"
NODE_MIN_MAJOR_VERSION = 12
DEFAULT_NPM_REGISTRY = "https://registry.npmjs.org/"
RUNTIME_PROBE_TIMEOUT = 30.0

# Response pipeline
SERVER_HEADER_NAME = "Server"
SERVER_HEADER_VALUE = "esm.sh"
CORS_ALLOW_METHODS = ("GET", "POST")
CORS_ALLOW_HEADERS = (
    "Origin",
    "Content-Type",
    "Content-Length",
    "Accept-Encoding",
    "Authorization",
)
CORS_MAX_AGE = 3600

# Listener lifecycle
LISTENER_STARTUP_TIMEOUT = 10.0
LISTENER_STARTUP_POLL = 0.05
LISTENER_SHUTDOWN_TIMEOUT = 5

# TLS
SELF_SIGNED_VALID_DAYS = 365
CERTIFICATE_RENEW_BEFORE_DAYS = 30
CERTBOT_BINARY = "certbot"
CERTBOT_TIMEOUT = 300.0
