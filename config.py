"""Configuration for the Solibri MCP server.

Every setting can be overridden from the environment (or a .env file next to
the server). Defaults assume a stock Solibri install on Windows.
"""

import ntpath
import os
import secrets
from dataclasses import dataclass, field

from dotenv import load_dotenv
load_dotenv()

SERVER_NAME = "solibri-mcp-server"
SERVER_VERSION = "1.0.0"

_BASE_DIR = os.path.dirname(os.path.abspath(__file__))
_SOLIBRI_PUBLIC = "C:\\Users\\Public\\Solibri\\SOLIBRI"


def _int(environ, name: str, default: int) -> int:
    try:
        return int(environ.get(name, ""))
    except ValueError:
        return default


def _float(environ, name: str, default: float) -> float:
    try:
        return float(environ.get(name, ""))
    except ValueError:
        return default


@dataclass(frozen=True)
class Config:
    host: str = "0.0.0.0"
    port: int = 3000
    auth_token: str = field(default_factory=lambda: secrets.token_hex(32), repr=False)

    exe_path: str = "C:\\Program Files\\Solibri\\SOLIBRI\\Solibri.exe"
    rest_host: str = "localhost"
    rest_port: int = 10876

    work_dir: str = os.path.join(_BASE_DIR, "work")
    autorun_dir: str = os.path.join(_BASE_DIR, "autorun")
    output_dir: str = os.path.join(_BASE_DIR, "output")

    classifications_dir: str = ntpath.join(_SOLIBRI_PUBLIC, "Classifications")
    rulesets_dir: str = ntpath.join(_SOLIBRI_PUBLIC, "Rulesets")
    ito_dir: str = ntpath.join(_SOLIBRI_PUBLIC, "Information Takeoff")
    templates_dir: str = ntpath.join(_SOLIBRI_PUBLIC, "Templates")

    # Seconds before a running autorun job is terminated (30 minutes).
    autorun_timeout: float = 30 * 60
    # Keep generated autorun XML files for debugging.
    keep_xml_files: bool = False

    log_level: str = "info"

    @property
    def rest_url(self) -> str:
        return f"http://{self.rest_host}:{self.rest_port}"

    @classmethod
    def from_env(cls, environ=None) -> "Config":
        """Build a Config from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        defaults = cls(auth_token="")
        token = env.get("SOLIBRI_MCP_TOKEN") or secrets.token_hex(32)
        return cls(
            host=env.get("SOLIBRI_MCP_HOST", defaults.host),
            port=_int(env, "SOLIBRI_MCP_PORT", defaults.port),
            auth_token=token,
            exe_path=env.get("SOLIBRI_EXE_PATH", defaults.exe_path),
            rest_host=env.get("SOLIBRI_REST_HOST", defaults.rest_host),
            rest_port=_int(env, "SOLIBRI_REST_PORT", defaults.rest_port),
            work_dir=env.get("SOLIBRI_WORK_DIR", defaults.work_dir),
            autorun_dir=env.get("SOLIBRI_AUTORUN_DIR", defaults.autorun_dir),
            output_dir=env.get("SOLIBRI_OUTPUT_DIR", defaults.output_dir),
            classifications_dir=env.get("SOLIBRI_CLASSIFICATIONS_DIR", defaults.classifications_dir),
            rulesets_dir=env.get("SOLIBRI_RULESETS_DIR", defaults.rulesets_dir),
            ito_dir=env.get("SOLIBRI_ITO_DIR", defaults.ito_dir),
            templates_dir=env.get("SOLIBRI_TEMPLATES_DIR", defaults.templates_dir),
            autorun_timeout=_float(env, "SOLIBRI_AUTORUN_TIMEOUT_SECONDS", defaults.autorun_timeout),
            keep_xml_files=env.get("SOLIBRI_KEEP_XML", "").lower() == "true",
            log_level=env.get("LOG_LEVEL", defaults.log_level),
        )
