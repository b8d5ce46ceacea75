"""Scanner registry and scan profiles."""

from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from app.scanners.base import ScannerAdapter
from app.scanners.checkov import CheckovAdapter
from app.scanners.gitleaks import GitleaksAdapter
from app.scanners.osv import OsvAdapter
from app.scanners.runner import ProcessRunner
from app.scanners.semgrep import SemgrepAdapter
from app.scanners.trivy import TrivyAdapter
from app.schemas.vulnerability import SCANNER_TYPE, ScanMode, ScannerName

if TYPE_CHECKING:
    from app.core.config import Settings

AdapterFactory = Callable[["Settings", ProcessRunner], ScannerAdapter]

# Declared scanner set per mode, in canonical order.
SCAN_PROFILES: dict[str, tuple[ScannerName, ...]] = {
    "quick": ("semgrep", "gitleaks"),
    "full": ("semgrep", "osv", "gitleaks", "checkov", "trivy"),
}

SCANNER_LABELS: dict[str, str] = {
    "semgrep": "Static Analysis",
    "osv": "Dependency Analysis",
    "gitleaks": "Secret Detection",
    "checkov": "Infrastructure as Code",
    "trivy": "Container Images",
}

SCANNER_BINARY_SETTING: dict[str, str] = {
    "semgrep": "SEMGREP_BIN",
    "osv": "OSV_SCANNER_BIN",
    "gitleaks": "GITLEAKS_BIN",
    "checkov": "CHECKOV_BIN",
    "trivy": "TRIVY_BIN",
}

DEFAULT_FACTORIES: dict[str, AdapterFactory] = {
    "semgrep": SemgrepAdapter,
    "osv": OsvAdapter,
    "gitleaks": GitleaksAdapter,
    "checkov": CheckovAdapter,
    "trivy": TrivyAdapter,
}


def scanner_order(name: str) -> int:
    return list(SCANNER_TYPE).index(name)


class ScannerRegistry:
    """Maps scanner name -> adapter instance. Adding a scanner means registering one factory."""

    def __init__(self, adapters: dict[str, ScannerAdapter]) -> None:
        self._adapters = dict(adapters)

    def get(self, name: str) -> ScannerAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise KeyError(f"No adapter registered for scanner {name!r}") from None

    def names(self) -> list[str]:
        return sorted(self._adapters, key=scanner_order)

    def select(self, mode: ScanMode, requested: Iterable[str] | None = None) -> list[ScannerName]:
        """
        Scanners declared by the mode's profile, narrowed by an explicit request.

        A requested scanner outside the profile is ignored, so a quick scan never
        runs the slow dependency or container tools.
        """
        declared = [s for s in SCAN_PROFILES[mode] if s in self._adapters]
        if requested is None:
            return declared
        wanted = set(requested)
        return [s for s in declared if s in wanted]


def build_registry(
    settings: "Settings",
    runner: ProcessRunner | None = None,
    factories: dict[str, AdapterFactory] | None = None,
) -> ScannerRegistry:
    runner = runner or ProcessRunner()
    factories = factories or DEFAULT_FACTORIES
    return ScannerRegistry({name: factory(settings, runner) for name, factory in factories.items()})


def scanner_availability(settings: "Settings", runner: ProcessRunner | None = None) -> dict[str, bool]:
    """Whether each scanner binary resolves on PATH (reported by the health endpoint)."""
    runner = runner or ProcessRunner()
    return {
        name: runner.is_available(getattr(settings, attr))
        for name, attr in SCANNER_BINARY_SETTING.items()
    }
