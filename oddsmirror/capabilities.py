from dataclasses import dataclass

from .settings import Settings, settings as default_settings


@dataclass(frozen=True)
class Capabilities:
    """Optional worker behaviour, decided once at startup."""

    dry_run: bool
    broadcast: bool
    backfill: bool
    hedge_reconcile: bool
    history_sync: bool

    @property
    def mutates(self) -> bool:
        return not self.dry_run

    def enabled(self) -> list[str]:
        names = ("broadcast", "backfill", "hedge_reconcile", "history_sync")
        return [name for name in names if getattr(self, name)]


def resolve_capabilities(settings: Settings | None = None) -> Capabilities:
    settings = settings or default_settings
    dry_run = bool(settings.DRY_RUN)
    return Capabilities(
        dry_run=dry_run,
        broadcast=bool(settings.BROADCAST_ENABLED) and not dry_run,
        backfill=bool(settings.BACKFILL_ENABLED) and not dry_run,
        hedge_reconcile=bool(settings.HEDGE_RECONCILE_ENABLED) and not dry_run,
        history_sync=bool(settings.HISTORY_SYNC_ENABLED) and not dry_run,
    )
