"""
Bot Settings Service
Process-wide assistant settings with explicit load and write-through update.

The service is constructed by the application factory and injected wherever
the settings are read (bot responder) or changed (settings API). Persisted
values live in the ``AppSetting`` table under ``bot.*`` keys.
"""

import logging
import threading
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict

from ..models import db, AppSetting
from ..utils.error_handling import ValidationError

logger = logging.getLogger(__name__)

THINK_MODE_KEY = 'bot.thinkMode'
MODEL_KEY = 'bot.model'
SYSTEM_PROMPT_KEY = 'bot.systemPrompt'


@dataclass(frozen=True)
class BotSettings:
    think_mode: bool
    model: str
    system_prompt: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'thinkMode': self.think_mode,
            'model': self.model,
            'systemPrompt': self.system_prompt,
        }


class BotSettingsService:
    """
    Holds the current ``BotSettings`` snapshot.

    ``load()`` must run inside an application context at startup. ``update()``
    commits every change before the in-memory snapshot is swapped, so readers
    never observe a value that is not durable.
    """

    def __init__(self, default_model: str, default_system_prompt: str,
                 default_think_mode: bool = False):
        self._defaults = BotSettings(
            think_mode=default_think_mode,
            model=default_model,
            system_prompt=default_system_prompt,
        )
        self._current = self._defaults
        self._lock = threading.Lock()

    def load(self) -> BotSettings:
        """Read persisted settings, falling back to configured defaults"""
        think_raw = AppSetting.get_value(THINK_MODE_KEY)
        model = AppSetting.get_value(MODEL_KEY) or self._defaults.model
        system_prompt = AppSetting.get_value(SYSTEM_PROMPT_KEY) or self._defaults.system_prompt
        think_mode = (think_raw == 'true') if think_raw is not None else self._defaults.think_mode

        with self._lock:
            self._current = BotSettings(think_mode=think_mode, model=model,
                                        system_prompt=system_prompt)
        logger.info(f"Bot settings loaded (model={model}, thinkMode={think_mode})")
        return self._current

    def snapshot(self) -> BotSettings:
        """Immutable copy for one bot run"""
        return self._current

    @staticmethod
    def validate_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate a camelCase patch body.

        Returns the accepted changes keyed by ``BotSettings`` field name.
        Unknown keys are ignored.
        """
        if not isinstance(changes, dict):
            raise ValidationError("Request body must be a JSON object")

        accepted = {}
        if 'thinkMode' in changes:
            if not isinstance(changes['thinkMode'], bool):
                raise ValidationError("thinkMode must be a boolean", field='thinkMode')
            accepted['think_mode'] = changes['thinkMode']
        for wire_name, field_name in (('model', 'model'), ('systemPrompt', 'system_prompt')):
            if wire_name in changes:
                value = changes[wire_name]
                if not isinstance(value, str) or not value.strip():
                    raise ValidationError(f"{wire_name} must be a non-empty string", field=wire_name)
                accepted[field_name] = value
        return accepted

    def update(self, **changes) -> BotSettings:
        """Persist ``changes`` (BotSettings field names) and swap the snapshot"""
        unknown = set(changes) - {'think_mode', 'model', 'system_prompt'}
        if unknown:
            raise ValidationError(f"Unknown bot settings: {', '.join(sorted(unknown))}")

        with self._lock:
            updated = replace(self._current, **changes)
            if 'think_mode' in changes:
                AppSetting.set_value(THINK_MODE_KEY, 'true' if updated.think_mode else 'false')
            if 'model' in changes:
                AppSetting.set_value(MODEL_KEY, updated.model)
            if 'system_prompt' in changes:
                AppSetting.set_value(SYSTEM_PROMPT_KEY, updated.system_prompt)
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            self._current = updated

        logger.info(f"Bot settings updated: {asdict(updated)}")
        return updated
