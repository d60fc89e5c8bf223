"""Port allocation helpers for multipb."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


class PortAllocationError(RuntimeError):
    """Raised when a port request violates the reserved range or is taken."""


@dataclass(frozen=True, slots=True)
class PortAllocator:
    """Pick and validate ports inside the inclusive ``[minimum, maximum]`` range."""

    minimum: int = 30000
    maximum: int = 39999

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.minimum < 1 or self.maximum > 65535:
            raise PortAllocationError("Port range must lie between 1 and 65535.")
        if self.minimum > self.maximum:
            raise PortAllocationError(
                f"Port range minimum {self.minimum} exceeds maximum {self.maximum}."
            )

    def in_range(self, port: int) -> bool:
        """Return ``True`` when *port* lies inside the reserved range."""
        return self.minimum <= port <= self.maximum

    def allocate(self, used: Iterable[int], *, requested: int | None = None) -> int:
        """Return *requested* after validation, or the smallest free port."""
        taken = set(used)
        if requested is not None:
            if not self.in_range(requested):
                raise PortAllocationError(
                    f"Port must be between {self.minimum} and {self.maximum}"
                )
            if requested in taken:
                raise PortAllocationError(f"Port {requested} is already in use")
            return requested

        candidate = self.minimum
        while candidate <= self.maximum:
            if candidate not in taken:
                return candidate
            candidate += 1
        raise PortAllocationError(
            f"No free ports remain between {self.minimum} and {self.maximum}"
        )

    def describe(self, port: int, used: Iterable[int]) -> dict[str, object]:
        """Return the availability report served by ``/ports/check``."""
        in_use = port in set(used)
        in_range = self.in_range(port)
        return {
            "port": port,
            "available": in_range and not in_use,
            "inRange": in_range,
            "inUse": in_use,
        }


def parse_port(value: object) -> int | None:
    """Coerce user input into a port number (``None`` when absent)."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise PortAllocationError("Port must be a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        candidate = value.strip()
        if candidate:
            try:
                return int(candidate, 10)
            except ValueError:
                pass
    raise PortAllocationError("Port must be a number")


__all__ = ["PortAllocationError", "PortAllocator", "parse_port"]
