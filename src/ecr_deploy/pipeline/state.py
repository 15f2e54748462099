"""Side effects of one pipeline run that must be undone before exit."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class RunState:
    """Accumulator of registry sessions and probe container lifecycle.

    Attributes:
        logged_in_hosts: Registry hosts with an active login, in login order
        probe_started: Whether a probe container was started
        probe_stopped: Whether the probe container has been stopped
    """

    logged_in_hosts: list[str] = field(default_factory=list)
    probe_started: bool = False
    probe_stopped: bool = False

    def record_login(self, host: str) -> None:
        if host not in self.logged_in_hosts:
            self.logged_in_hosts.append(host)

    def record_logout(self, host: str) -> None:
        if host in self.logged_in_hosts:
            self.logged_in_hosts.remove(host)

    @property
    def probe_running(self) -> bool:
        """Whether a probe container was started and not yet stopped."""
        return self.probe_started and not self.probe_stopped
