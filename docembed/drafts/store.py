"""
store.py — Draft synchronization store.

Tracks whether an unsaved markdown draft sits in the shared draft slot and
keeps that in sync across tabs.

    storage = SharedStorage()
    store = DraftStore(storage.area())
    unsubscribe = store.subscribe(lambda state: print(state.has_draft, state.preview))

The first subscriber triggers one check_for_draft() and registers a storage
listener; the last unsubscribe (or close()) removes it again.
"""

from typing import NamedTuple, Optional

from loguru import logger

from docembed import config
from docembed.drafts.storage import StorageArea, StorageEvent
from docembed.errors import StorageUnavailable
from docembed.state.atom import Atom, Listener, Unsubscribe
from docembed.text.markdown import first_heading

PREVIEW_MAX_LENGTH = 50


class DraftState(NamedTuple):
    has_draft: bool = False
    preview: Optional[str] = None


EMPTY_DRAFT = DraftState()


def is_meaningful_draft(content: Optional[str]) -> bool:
    """
    True iff the stripped draft is non-empty and not the bare "# " placeholder.

    Whitespace-only and "#"-with-surrounding-whitespace both count as empty;
    nothing else does.
    """
    if content is None:
        return False
    stripped = content.strip()
    return bool(stripped) and stripped != "#"


def read_draft_state(content: Optional[str]) -> DraftState:
    if not is_meaningful_draft(content):
        return EMPTY_DRAFT
    return DraftState(True, first_heading(content, max_length=PREVIEW_MAX_LENGTH))


class DraftStore:
    def __init__(self, storage: StorageArea, key: str = config.DRAFT_KEY):
        self.storage = storage
        self.key = key
        self.state: Atom[DraftState] = Atom(EMPTY_DRAFT)
        self.state.on_mount(self._on_mount)
        self._remove_listener = None

    @property
    def has_draft(self) -> bool:
        return self.state.get().has_draft

    @property
    def preview(self) -> Optional[str]:
        return self.state.get().preview

    def subscribe(self, listener: Listener) -> Unsubscribe:
        return self.state.subscribe(listener)

    def listen(self, listener: Listener) -> Unsubscribe:
        return self.state.listen(listener)

    def check_for_draft(self) -> bool:
        """Re-read the slot; unreadable storage counts as no draft."""
        try:
            content = self.storage.get_item(self.key)
        except (StorageUnavailable, OSError) as exc:
            logger.warning(f"Draft slot unreadable, assuming no draft: {exc}")
            self.state.set(EMPTY_DRAFT)
            return False

        state = read_draft_state(content)
        self.state.set(state)
        return state.has_draft

    def clear_draft_state(self) -> None:
        """Reset to empty without touching storage."""
        self.state.set(EMPTY_DRAFT)

    # ------------------------------------------------------------------
    # Slot helpers
    # ------------------------------------------------------------------

    def save_draft(self, content: str) -> None:
        """Overwrite the slot; empty content removes it."""
        try:
            if is_meaningful_draft(content):
                self.storage.set_item(self.key, content)
            else:
                self.storage.remove_item(self.key)
        except (StorageUnavailable, OSError) as exc:
            logger.warning(f"Could not save draft: {exc}")
            return
        self.check_for_draft()

    def load_draft(self) -> Optional[str]:
        """Draft content when meaningful, else None."""
        try:
            content = self.storage.get_item(self.key)
        except (StorageUnavailable, OSError) as exc:
            logger.warning(f"Could not load draft: {exc}")
            return None
        return content if is_meaningful_draft(content) else None

    def clear_draft(self) -> None:
        """Remove the slot (e.g. after publishing) and reset the state."""
        try:
            self.storage.remove_item(self.key)
        except (StorageUnavailable, OSError) as exc:
            logger.warning(f"Could not clear draft: {exc}")
        self.clear_draft_state()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def listening(self) -> bool:
        return self._remove_listener is not None

    def close(self) -> None:
        """Drop the storage subscription regardless of remaining observers."""
        self._stop_listening()

    def _on_mount(self):
        self.check_for_draft()
        if self._remove_listener is None:
            self._remove_listener = self.storage.add_listener(self._handle_storage)
        return self._stop_listening

    def _stop_listening(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None

    def _handle_storage(self, event: StorageEvent) -> None:
        if event.key == self.key:
            self.check_for_draft()
