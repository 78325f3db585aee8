from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Sequence, Tuple

from assistant_relay.logging import get_logger
from assistant_relay.service.errors import AssistantNotConfigured, NotFoundError
from assistant_relay.storage.models import AssistantSettings, UserAssistant

logger = get_logger(__name__)


class AssistantResolver:
    """Server-side choice of which upstream assistant answers a user.

    Clients never name the assistant for a relay call; it is always the
    user's single active ``UserAssistant``.
    """

    def __init__(self, store, *, default_catalogue: Sequence[Dict[str, str]] = ()) -> None:
        self.store = store
        self.default_catalogue = [
            entry
            for entry in default_catalogue
            if entry.get("assistant_id") and entry.get("name")
        ]

    async def resolve(self, user_id: str) -> Tuple[str, AssistantSettings]:
        active = await asyncio.to_thread(self.store.get_active_assistant, user_id)
        if active is None:
            logger.info("assistant_not_configured", user_id=user_id)
            raise AssistantNotConfigured(
                "No active assistant configured. Please configure an assistant in settings."
            )
        settings = await asyncio.to_thread(
            self.store.ensure_assistant_settings, user_id, active.assistant_id
        )
        return active.assistant_id, settings

    def list_assistants(self, user_id: str) -> List[UserAssistant]:
        """List the user's assistants, seeding the default catalogue on first access."""
        assistants = self.store.list_user_assistants(user_id)
        if assistants or not self.default_catalogue:
            return assistants
        seeded = self.store.seed_user_assistants(user_id, self.default_catalogue)
        logger.info("assistants_seeded", user_id=user_id, count=len(seeded))
        return seeded

    def activate(self, user_id: str, assistant_id: str) -> UserAssistant:
        self.list_assistants(user_id)
        activated = self.store.activate_assistant(user_id, assistant_id)
        if activated is None:
            raise NotFoundError("assistant not found", detail={"assistant_id": assistant_id})
        logger.info("assistant_activated", user_id=user_id, assistant_id=assistant_id)
        return activated

    def _require_owned(self, user_id: str, assistant_id: str) -> None:
        owned = {a.assistant_id for a in self.list_assistants(user_id)}
        if assistant_id not in owned:
            raise NotFoundError("assistant not found", detail={"assistant_id": assistant_id})

    def get_settings(self, user_id: str, assistant_id: str) -> AssistantSettings:
        self._require_owned(user_id, assistant_id)
        return self.store.ensure_assistant_settings(user_id, assistant_id)

    def update_settings(
        self, user_id: str, assistant_id: str, changes: Dict[str, Any]
    ) -> AssistantSettings:
        self._require_owned(user_id, assistant_id)
        return self.store.update_assistant_settings(user_id, assistant_id, **changes)
