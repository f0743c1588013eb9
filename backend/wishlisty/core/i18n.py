import json
import logging
from pathlib import Path
from typing import Any

from wishlisty.core.config import settings
from wishlisty.core.errors import RenderError


logger = logging.getLogger("wishlisty.i18n")

LOCALES_DIR = Path(__file__).resolve().parent.parent / "locales"


class MessageCatalog:
    def __init__(
        self,
        catalogs: dict[str, dict[str, str]] | None = None,
        default_locale: str | None = None,
    ) -> None:
        self._catalogs = catalogs if catalogs is not None else self._load_bundled()
        self._default_locale = default_locale or settings.default_locale

    @staticmethod
    def _load_bundled() -> dict[str, dict[str, str]]:
        catalogs: dict[str, dict[str, str]] = {}
        for path in sorted(LOCALES_DIR.glob("*.json")):
            try:
                catalogs[path.stem] = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.exception("Failed to load message catalog path=%s", path)
        return catalogs

    @property
    def locales(self) -> list[str]:
        return sorted(self._catalogs)

    def render(self, key: str, variables: dict[str, Any] | None, locale: str | None) -> str | None:
        """Return the rendered message, or None when the key is unknown in every candidate locale.

        Raises RenderError when a template exists but cannot be filled.
        """
        for candidate in (locale, self._default_locale):
            if not candidate:
                continue
            template = self._catalogs.get(candidate, {}).get(key)
            if template is None:
                continue
            try:
                return template.format_map(variables or {})
            except (KeyError, IndexError, ValueError) as exc:
                raise RenderError(f"cannot render {key!r} for locale {candidate!r}: {exc}") from exc
        return None


message_catalog = MessageCatalog()
