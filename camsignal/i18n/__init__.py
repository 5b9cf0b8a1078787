"""
Backend internationalization for camsignal API errors.
Messages are picked from the Accept-Language header or the ?language= query.
"""

import json
import logging
import os
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "es")
DEFAULT_LANGUAGE = "en"


class I18nManager:
    """Manages translations for API messages."""

    def __init__(self):
        self.translations: Dict[str, Dict[str, Any]] = {}
        self._load_translations()

    def _load_translations(self):
        """Load every catalog shipped next to this module."""
        i18n_dir = os.path.dirname(os.path.abspath(__file__))

        for lang in SUPPORTED_LANGUAGES:
            file_path = os.path.join(i18n_dir, f"{lang}.json")
            try:
                with open(file_path, "r", encoding="utf-8") as f:
                    self.translations[lang] = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Error loading {lang}.json: {e}")

    def get_language_from_accept_language(self, accept_language: Optional[str]) -> str:
        """
        Extract language code from Accept-Language header.

        Args:
            accept_language: header value (e.g., "es-ES,es;q=0.9,en;q=0.8")

        Returns:
            A supported language code, 'en' when nothing matches
        """
        if not accept_language:
            return DEFAULT_LANGUAGE

        for lang_range in accept_language.split(","):
            lang_only = lang_range.split(";")[0].strip().lower().split("-")[0]
            if lang_only in self.translations:
                return lang_only

        return DEFAULT_LANGUAGE

    def translate(self, key: str, language: str = DEFAULT_LANGUAGE, **kwargs) -> str:
        """
        Get translated message by key.

        Args:
            key: "category.key" (e.g., "sessions.already_negotiating")
            language: Language code, unknown codes fall back to English
            **kwargs: Values interpolated into the message

        Returns:
            The message, or the key itself when no catalog defines it
        """
        if language not in self.translations:
            language = DEFAULT_LANGUAGE

        value = self._lookup(self.translations.get(language, {}), key)
        if value is None and language != DEFAULT_LANGUAGE:
            value = self._lookup(self.translations.get(DEFAULT_LANGUAGE, {}), key)
        if value is None:
            return key

        if kwargs:
            try:
                return value.format(**kwargs)
            except KeyError:
                return value
        return value

    @staticmethod
    def _lookup(catalog: Dict[str, Any], key: str) -> Optional[str]:
        value: Any = catalog
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return None
        return value if isinstance(value, str) else str(value)


# Global instance
_i18n_manager: Optional[I18nManager] = None


def get_i18n_manager() -> I18nManager:
    """Get or create the global I18nManager instance."""
    global _i18n_manager
    if _i18n_manager is None:
        _i18n_manager = I18nManager()
    return _i18n_manager


def translate(key: str, language: str = DEFAULT_LANGUAGE, **kwargs) -> str:
    """Convenience wrapper around the global manager."""
    return get_i18n_manager().translate(key, language, **kwargs)


def get_language_from_request(request) -> str:
    """
    Language preference of a FastAPI request.

    The ?language= query parameter wins over Accept-Language.
    """
    manager = get_i18n_manager()

    language = request.query_params.get("language")
    if language in manager.translations:
        return language

    return manager.get_language_from_accept_language(request.headers.get("accept-language"))
