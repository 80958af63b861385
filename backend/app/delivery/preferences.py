"""
preferences.py — Recipient preference lookup.

The engine only needs ``get(user_id)``; a missing entry means "no quiet
hours, immediate delivery, nothing opted out".
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from backend.app.delivery.models import RecipientPreferences


class PreferenceStore(ABC):

    @abstractmethod
    def get(self, user_id: str) -> Optional[RecipientPreferences]:
        ...

    @abstractmethod
    def set(self, prefs: RecipientPreferences) -> None:
        ...


class InMemoryPreferenceStore(PreferenceStore):

    def __init__(self):
        self._prefs: Dict[str, RecipientPreferences] = {}
        self._lock = threading.Lock()

    def set(self, prefs: RecipientPreferences) -> None:
        with self._lock:
            self._prefs[prefs.user_id] = prefs

    def get(self, user_id: str) -> Optional[RecipientPreferences]:
        with self._lock:
            return self._prefs.get(user_id)
