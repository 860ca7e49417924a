"""
This module contains the configuration settings for the buildkeeper supervisor.
It defines the application paths, the delegated install/build/start commands,
supervision timings and logging configuration.
It is used throughout the supervisor to ensure consistent settings and paths.
"""

import os
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
LOGS_DIR = pathlib.Path(os.getenv("BUILDKEEPER_LOGS_DIR", str(BASE_DIR / "logs")))
OVERRIDES_JSON_PATH = pathlib.Path(os.getenv("BUILDKEEPER_OVERRIDES", str(BASE_DIR / "overrides.json")))
SUPERVISOR_LOG_PATH = LOGS_DIR / "supervisor.log"

#* --- Supervised Application Layout ---
# Directory holding the manifest; every relative path below resolves against it.
APP_DIR = pathlib.Path(os.getenv("BUILDKEEPER_APP_DIR", os.getcwd()))
MANIFEST_FILE = "package.json"
LOCK_FILE = "package-lock.json"
DEPENDENCY_DIR = "node_modules"
SOURCE_DIR = "src"
BUILD_OUTPUT_DIR = ".next"
# Config files that affect build output, hashed in this order after the source tree.
BUILD_AUX_FILES = ["next.config.js", "next.config.mjs", "next.config.ts", "tsconfig.json", "package.json"]

#* --- Persisted State ---
DEPS_MARKER_FILE = ".deps_hash"
BUILD_MARKER_FILE = ".build_hash"
HANDLE_FILE = ".server_pgid"
SUPERVISOR_PID_FILE = ".buildkeeper.pid"
SERVICE_LOG_PATH = pathlib.Path(os.getenv("SERVICE_LOG_PATH", "/tmp/buildkeeper-service.log"))

#* --- Delegated Commands ---
SERVICE_HOST = os.getenv("SERVICE_HOST", "0.0.0.0")
SERVICE_PORT = int(os.getenv("SERVICE_PORT", "8080"))
PROBE_HOST = os.getenv("PROBE_HOST", "127.0.0.1")  # Where the port probe connects

INSTALL_COMMAND = os.getenv("INSTALL_COMMAND", "npm install")
BUILD_COMMAND = os.getenv("BUILD_COMMAND", "npm run build")
# {host} and {port} are substituted before the command is split.
START_COMMAND = os.getenv("START_COMMAND", "npm run start -- --hostname {host} --port {port}")
NPMRC_LINES = ["legacy-peer-deps=true"]  # Written to .npmrc before installing; empty disables

#* --- Supervisor Settings ---
DEFAULT_SYNC_INTERVAL = 15     # seconds between monitor ticks
SYNC_INTERVAL_RAW = os.getenv("GITHUB_SYNC_INTERVAL", "")
START_GRACE_PERIOD = 3         # seconds before verifying a fresh launch
STOP_GRACE_PERIOD = 10         # seconds before force-killing the group
INSTALL_TIMEOUT = None         # seconds; None waits forever
BUILD_TIMEOUT = None
LOG_TAIL_LINES = 40

#* --- Logging ---
LOG_FILE_ENABLED = os.getenv("LOG_FILE_ENABLED", "True").lower() in ('true', '1', 't')
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3

# Grafana Loki (for observability)
LOKI_ENABLED = os.getenv("LOKI_ENABLED", "False").lower() in ('true', '1', 't')
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")
LOG_BUFFER_FLUSH_INTERVAL = 10

#* --- MODIFIABLE SETTINGS (Changeable via overrides.json) ---
MODIFIABLE_SETTINGS = {
    "SYNC_INTERVAL", "START_GRACE_PERIOD", "STOP_GRACE_PERIOD",
    "INSTALL_TIMEOUT", "BUILD_TIMEOUT", "LOG_TAIL_LINES",
    "INSTALL_COMMAND", "BUILD_COMMAND", "START_COMMAND",
    "NPMRC_LINES", "LOG_BUFFER_FLUSH_INTERVAL",
}
