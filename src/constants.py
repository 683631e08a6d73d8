"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    RESOLUTION_ERROR = 3
    BUILD_ERROR = 4
    LOCKED = 5


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    PROJECT_FILE = "Project.toml"
    MANIFEST_FILE = "Manifest.toml"
    LOCK_FILE = ".depenv.lock"
    USAGE_LOG_FILE = "manifest_usage.toml"
    CONFIG_FILE = "depenv.yml"
    REGISTRY_INDEX_FILE = "registry.json"

    DEFAULT_DEPOT = "~/.depenv"
    DEPOT_PACKAGES_DIR = "packages"
    DEPOT_CLONES_DIR = "clones"
    DEPOT_DEV_DIR = "dev"
    DEPOT_ENVIRONMENTS_DIR = "environments"
    DEPOT_LOGS_DIR = "logs"
    DEPOT_CONFIG_DIR = "config"
    BUILD_LOGS_DIR = "build"

    ENV_DEPOT = "DEPENV_DEPOT"
    ENV_DEVDIR = "DEPENV_DEVDIR"
    ENV_REGISTRY = "DEPENV_REGISTRY"
    ENV_MAX_WORKERS = "DEPENV_MAX_WORKERS"
    ENV_LOG_LEVEL = "DEPENV_LOG_LEVEL"
    ENV_LOG_FORMAT = "DEPENV_LOG_FORMAT"
    ENV_PROJECT = "DEPENV_PROJECT"
    ENV_LOAD_PATH = "DEPENV_LOAD_PATH"
    ENV_COVERAGE = "DEPENV_COVERAGE"

    SCRIPT_BUILD = "build"
    SCRIPT_TEST = "test"
    TEST_TARGET = "test"
    DEFAULT_PACKAGE_VERSION = "0.1.0"

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    MAX_WORKERS = 4
    LOCK_BLOCKING = True
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    USER_AGENT = "depenv/0.1.0"
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_CACHE_TTL_SEC = 300
    DOWNLOAD_CHUNK_BYTES = 64 * 1024
    SLUG_LENGTH = 5
