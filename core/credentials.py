"""
Cookie file credentials.

Reads a browser-extension style cookie export (a JSON list, or an object with
a "cookies" list) and converts it to the shape Playwright's add_cookies wants.
The file is re-read for every task so refreshed cookies take effect without a
restart.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

logger = logging.getLogger(__name__)

SAME_SITE = {
    "no_restriction": "None",
    "none": "None",
    "lax": "Lax",
    "strict": "Strict",
    "unspecified": "Lax",
}


def to_playwright_cookie(raw: Dict[str, Any]) -> Dict[str, Any]:
    same_site = SAME_SITE.get(str(raw.get("sameSite") or "unspecified").lower(), "Lax")
    expires = raw.get("expirationDate", raw.get("expires"))
    cookie = {
        "name": raw["name"],
        "value": str(raw.get("value", "")),
        "domain": raw.get("domain", ""),
        "path": raw.get("path") or "/",
        "expires": float(expires) if expires is not None and not raw.get("session") else -1,
        "httpOnly": bool(raw.get("httpOnly", False)),
        "secure": bool(raw.get("secure", False)),
        "sameSite": same_site,
    }
    # Chromium refuses SameSite=None without Secure
    if same_site == "None":
        cookie["secure"] = True
    return cookie


class CookieFileCredentials:
    """Credential collaborator backed by a JSON cookie export."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> List[Dict[str, Any]]:
        """Return Playwright cookies; an absent or unreadable file yields none."""
        if not self.path.exists():
            logger.warning(f"Cookie file not found: {self.path}")
            return []
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read cookie file {self.path}: {e}")
            return []

        raw_cookies = data.get("cookies", []) if isinstance(data, dict) else data
        cookies = []
        for raw in raw_cookies:
            try:
                cookies.append(to_playwright_cookie(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed cookie: {e}")
        logger.debug(f"Loaded {len(cookies)} cookies from {self.path}")
        return cookies
