"""
Narrow interfaces between the scoring core and the host library.

The pipeline only talks to these three protocols, so any host (the
bundled SQLite store, a media-server adapter, a test fake) can plug in
without the core knowing its types. Bump INTERFACE_VERSION whenever a
method signature changes.
"""
from typing import Iterable, Protocol, runtime_checkable

from .models import CatalogItem, Interaction, UserRef

INTERFACE_VERSION = 1


@runtime_checkable
class CatalogSource(Protocol):
    def get_items(self) -> list[CatalogItem]:
        """Every movie/series to consider; stable for one run."""
        ...


@runtime_checkable
class InteractionSource(Protocol):
    def get_users(self) -> list[UserRef]:
        ...

    def get_interactions(self, user: UserRef) -> list[Interaction]:
        """The user's history, newest first."""
        ...


@runtime_checkable
class ResultConsumer(Protocol):
    def upsert_collection(
        self,
        user: UserRef,
        name: str,
        item_ids: Iterable[str],
        dry_run: bool = False,
    ) -> bool:
        """Idempotently replace a user-scoped row; return False when nothing was written."""
        ...
