"""Mock DNS resolver."""

from __future__ import annotations

from patchwindow.identity import ResolutionError


class MockDns:
    """Callable name -> addresses table. Unknown names fail like NXDOMAIN."""

    def __init__(self, records: dict[str, list[str]] | None = None) -> None:
        self._records = dict(records or {})
        self.lookups: list[str] = []

    def add(self, name: str, *addresses: str) -> None:
        self._records[name] = list(addresses)

    def __call__(self, name: str) -> list[str]:
        self.lookups.append(name)
        if name not in self._records:
            raise ResolutionError(f"DNS lookup for {name} failed: NXDOMAIN")
        return list(self._records[name])
