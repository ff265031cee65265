"""Kernel configuration."""

from pydantic import BaseModel, Field


class KernelConfig(BaseModel):
    """Tunables for the scheduler, watchers and sessions."""

    monitor_interval_seconds: float = Field(gt=0, default=0.2)
    max_items_per_tick: int = Field(ge=1, default=50)
    target_missing_seconds: float = Field(ge=0, le=10, default=6)
    session_timeout_hours: float = Field(ge=0, le=720, default=24)
    base_z_index: int = 1000000
    max_wait_seconds: float = 300
    text_fill_debounce_seconds: float = 1.0
    launcher_dismiss_delay_seconds: float = 2.0
    expand_report_delay_seconds: float = 0.2
    startup_queue_size: int = Field(ge=1, default=100)
    url_param_name: str = "usertour"        # ?usertour=<contentId> starts that content
