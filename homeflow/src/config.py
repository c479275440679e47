"""
Homeflow daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Every value has a default that matches a factory-configured SMA installation
(inverter on its link-local address, energy meter on the standard Speedwire
multicast group), so an empty environment starts a working daemon.

Surplus signals are given as a JSON list in ``SURPLUS_SIGNALS``, e.g.::

    SURPLUS_SIGNALS='[{"label": "Boiler", "minutes": 10, "watts": 2000}]'

CHANGELOG:
- 2026-10-15: Add RECENT_MODE and surplus label uniqueness check
- 2026-10-12: Initial creation (STORY-001)

TODO:
- None
"""

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from homeflow.src.metrics import metric_table
from homeflow.src.models import SurplusSignalConfig
from homeflow.src.signals import HIGH_IMPORT_WINDOW_S, NO_SUN_AFTER_S

_RECENT_MODES = ("window", "exponential")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class HomeflowSettings(BaseSettings):
    """Homeflow daemon configuration.

    Attributes:
        inverter_host: Inverter IP address / hostname.
        inverter_port: Modbus TCP port (default 502).
        inverter_unit_id: Modbus unit ID (SMA uses 3).
        inverter_poll_interval_ms: Milliseconds between inverter data polls.
        discovery_interval_ms: Milliseconds between discovery cycles.
        meter_group: Speedwire multicast group.
        meter_port: Speedwire UDP port.
        meter_interface: Local interface address for the multicast membership.
        membership_refresh_s: Seconds between multicast membership refreshes.
        listener_restart_delay_s: Seconds before rebinding after a socket error.
        recent_minutes: Window of the "recent" value group.
        recent_mode: ``window`` (mean over the window) or ``exponential``.
        signal_off_grid: Enable the off-grid signal.
        signal_no_sun: Enable the no-sun signal.
        signal_high_import: Enable the high-import signal.
        surplus_signals: Ordered surplus signal definitions.
        base_load_variability_w: Headroom added to every surplus threshold.
        state_path: SQLite file holding the daily energy checkpoint.
        health_path: Health JSON file path.
        bridge_url: Smart-home bridge base URL; publishing stays local when unset.
        bridge_token: Bearer token for the bridge.
        publish_interval_s: Seconds between pushes to the bridge.
        log_level: Root log level.
    """

    inverter_host: str = "169.254.12.3"
    inverter_port: int = 502
    inverter_unit_id: int = 3
    inverter_poll_interval_ms: int = 60_000
    discovery_interval_ms: int = 1_000
    meter_group: str = "239.12.255.254"
    meter_port: int = 9522
    meter_interface: str = "0.0.0.0"
    membership_refresh_s: float = 120.0
    listener_restart_delay_s: float = 10.0
    recent_minutes: int = 3
    recent_mode: str = "window"
    signal_off_grid: bool = True
    signal_no_sun: bool = True
    signal_high_import: bool = True
    surplus_signals: list[SurplusSignalConfig] = []
    base_load_variability_w: float = 50.0
    state_path: str = "/data/state.db"
    health_path: str = "/data/health.json"
    bridge_url: str | None = None
    bridge_token: str = ""
    publish_interval_s: float = 1.0
    log_level: str = "INFO"

    @field_validator("inverter_port", "meter_port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate TCP/UDP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("inverter_unit_id")
    @classmethod
    def unit_id_must_be_valid(cls, v: int) -> int:
        """Validate Modbus unit ID is in valid range (1-247)."""
        if v < 1 or v > 247:
            raise ValueError("INVERTER_UNIT_ID must be between 1 and 247")
        return v

    @field_validator("inverter_poll_interval_ms", "discovery_interval_ms")
    @classmethod
    def interval_must_be_reasonable(cls, v: int) -> int:
        """Polling faster than 100 ms would flood the inverter."""
        if v < 100:
            raise ValueError("Poll intervals must be >= 100 ms")
        return v

    @field_validator(
        "membership_refresh_s", "listener_restart_delay_s", "publish_interval_s"
    )
    @classmethod
    def seconds_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Intervals must be > 0 seconds")
        return v

    @field_validator("recent_minutes")
    @classmethod
    def recent_minutes_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("RECENT_MINUTES must be >= 1")
        return v

    @field_validator("recent_mode")
    @classmethod
    def recent_mode_must_be_known(cls, v: str) -> str:
        v = v.lower()
        if v not in _RECENT_MODES:
            raise ValueError(f"RECENT_MODE must be one of {', '.join(_RECENT_MODES)}")
        return v

    @field_validator("base_load_variability_w")
    @classmethod
    def variability_must_be_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("BASE_LOAD_VARIABILITY_W must be >= 0")
        return v

    @field_validator("bridge_url")
    @classmethod
    def bridge_url_must_be_http(cls, v: str | None) -> str | None:
        """Validate the bridge URL scheme; an empty value disables pushing."""
        if not v:
            return None
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(f"BRIDGE_URL must use http(s) (got: '{v[:20]}...')")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        v = v.upper()
        if v not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}")
        return v

    @model_validator(mode="after")
    def _surplus_labels_must_be_unique(self) -> "HomeflowSettings":
        """Each surplus label must map to its own metric IDs."""
        metric_table(signal.label for signal in self.surplus_signals)
        return self

    @property
    def measurement_capacity(self) -> int:
        """Ring buffer size covering every window the daemon evaluates."""
        longest_surplus = max(
            (signal.minutes * 60 for signal in self.surplus_signals), default=0
        )
        return max(
            self.recent_minutes * 60,
            HIGH_IMPORT_WINDOW_S,
            NO_SUN_AFTER_S,
            longest_surplus,
        )

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
