"""Load and provide automator configuration from automator.toml."""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[no-redef]
from pathlib import Path

DEFAULT_INPUT_SELECTORS = [
    'textarea[aria-label="Start typing a prompt"]',
    'textarea[aria-label="Type something or tab to choose an example prompt"]',
]


class ConfigError(ValueError):
    """Raised when automator.toml holds an unusable value."""


@dataclass
class Config:
    server_url: str = "http://127.0.0.1:5101"
    poll_interval: float = 3.0
    request_timeout: float = 10.0
    election_interval: float = 5.0
    stale_factor: float = 2.5
    startup_delay: float = 3.0
    lease_key: str = "aistudio_automator_master_tab"
    ready_key: str = "AUTOMATION_READY"
    ready_poll: float = 1.0
    ready_required: bool = True
    target_url_part: str = "MakerSuiteService/GenerateContent"
    arm_timeout: float = 60.0
    grace_period: float = 1.5
    page_url: str = "https://aistudio.google.com/prompts/new_chat"
    input_selectors: list[str] = field(
        default_factory=lambda: list(DEFAULT_INPUT_SELECTORS)
    )
    submit_selector: str = "run-button button"
    element_timeout: float = 10.0
    element_poll: float = 0.2
    tabs: int = 1
    headless: bool = False
    state_dir: Path = Path.home() / ".automator" / "browser"
    log_level: str = "INFO"

    @property
    def lease_ttl(self) -> float:
        """Seconds after which an unrenewed lease is considered abandoned."""
        return self.election_interval * self.stale_factor

    @property
    def state_file(self) -> Path:
        return self.state_dir / "storage_state.json"


def load(project_root: Path | None = None) -> Config:
    """Load config from automator.toml; all fields have defaults."""
    if project_root is None:
        project_root = Path.cwd()

    toml_path = project_root / "automator.toml"
    data: dict = {}
    if toml_path.exists():
        with open(toml_path, "rb") as f:
            data = tomllib.load(f)

    server = data.get("server", {})
    election = data.get("election", {})
    readiness = data.get("readiness", {})
    capture = data.get("capture", {})
    page = data.get("page", {})
    browser = data.get("browser", {})
    runtime = data.get("runtime", {})

    defaults = Config()

    # AUTOMATOR_SERVER_URL takes precedence over [server] url.
    server_url = os.environ.get("AUTOMATOR_SERVER_URL") or server.get(
        "url", defaults.server_url
    )

    state_dir = browser.get("state_dir")

    cfg = Config(
        server_url=server_url.rstrip("/"),
        poll_interval=server.get("poll_interval", defaults.poll_interval),
        request_timeout=server.get("request_timeout", defaults.request_timeout),
        election_interval=election.get("interval", defaults.election_interval),
        stale_factor=election.get("stale_factor", defaults.stale_factor),
        startup_delay=election.get("startup_delay", defaults.startup_delay),
        lease_key=election.get("lease_key", defaults.lease_key),
        ready_key=readiness.get("key", defaults.ready_key),
        ready_poll=readiness.get("poll_interval", defaults.ready_poll),
        ready_required=readiness.get("required", defaults.ready_required),
        target_url_part=capture.get("target_url_part", defaults.target_url_part),
        arm_timeout=capture.get("arm_timeout", defaults.arm_timeout),
        grace_period=capture.get("grace_period", defaults.grace_period),
        page_url=page.get("url", defaults.page_url),
        input_selectors=page.get("input_selectors", defaults.input_selectors),
        submit_selector=page.get("submit_selector", defaults.submit_selector),
        element_timeout=page.get("element_timeout", defaults.element_timeout),
        element_poll=page.get("element_poll", defaults.element_poll),
        tabs=browser.get("tabs", defaults.tabs),
        headless=browser.get("headless", defaults.headless),
        state_dir=Path(state_dir).expanduser() if state_dir else defaults.state_dir,
        log_level=runtime.get("log_level", defaults.log_level),
    )
    _validate(cfg)
    return cfg


def _validate(cfg: Config) -> None:
    if cfg.election_interval <= 0:
        raise ConfigError("automator.toml [election] interval must be > 0 seconds.")
    if cfg.stale_factor <= 1:
        raise ConfigError(
            "automator.toml [election] stale_factor must be > 1, "
            "otherwise a live leader's lease expires between renewals."
        )
    if cfg.tabs < 1:
        raise ConfigError("automator.toml [browser] tabs must be >= 1.")
    if not cfg.input_selectors:
        raise ConfigError("automator.toml [page] input_selectors must not be empty.")
