"""Element presence, clicks, popup dismissal and login-page detection."""

from __future__ import annotations

import json
import logging
import sys

from ..engine.errors import ScraperError
from ..engine.surface import RemoteSurface

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


async def element_exists(surface: RemoteSurface, selector: str) -> bool:
    """Check whether ``selector`` matches an element on the current page."""
    result = await surface.evaluate(f"document.querySelector({json.dumps(selector)}) !== null")
    return bool(result)


async def click(surface: RemoteSurface, selector: str) -> bool:
    """Click the first element matching ``selector``. Returns False if absent."""
    result = await surface.evaluate(
        f"""
        (() => {{
            const el = document.querySelector({json.dumps(selector)});
            if (!el) {{ return false; }}
            el.click();
            return true;
        }})()
        """
    )
    return bool(result)


async def click_link_containing(surface: RemoteSurface, *texts: str, any_of: tuple = ()) -> bool:
    """Click the first link whose text contains every one of ``texts``.

    When ``any_of`` is given the link text must also contain at least one of
    those strings.
    """
    result = await surface.evaluate(
        f"""
        (() => {{
            const required = {json.dumps(list(texts))};
            const anyOf = {json.dumps(list(any_of))};
            for (const link of document.querySelectorAll('a')) {{
                const text = link.textContent || '';
                if (!required.every(t => text.indexOf(t) >= 0)) {{ continue; }}
                if (anyOf.length && !anyOf.some(t => text.indexOf(t) >= 0)) {{ continue; }}
                link.click();
                return true;
            }}
            return false;
        }})()
        """
    )
    return bool(result)


async def fill_fields(surface: RemoteSurface, values: dict[str, str]) -> None:
    """Set the value of each selector's input element."""
    await surface.evaluate(
        f"""
        (() => {{
            const values = {json.dumps(values)};
            for (const [selector, value] of Object.entries(values)) {{
                const el = document.querySelector(selector);
                if (el) {{
                    el.value = value;
                    el.dispatchEvent(new Event('input', {{bubbles: true}}));
                }}
            }}
            return true;
        }})()
        """
    )


async def dismiss_popup(surface: RemoteSurface, selector: str) -> bool:
    """Best-effort: click a visible blocking popup. Never raises."""
    try:
        result = await surface.evaluate(
            f"""
            (() => {{
                const popup = document.querySelector({json.dumps(selector)});
                if (popup && popup.style.display !== 'none') {{
                    popup.click();
                    return true;
                }}
                return false;
            }})()
            """
        )
    except ScraperError as e:
        logger.debug(f"Failed to handle popup: {e}")
        return False
    if result:
        logger.info(f"Dismissed popup {selector}")
    return bool(result)


async def link_texts(surface: RemoteSurface) -> str:
    """All link texts on the page, for debug logging."""
    try:
        return str(
            await surface.evaluate(
                "Array.from(document.querySelectorAll('a')).map(a => a.textContent.trim()).join(' | ')"
            )
        )
    except ScraperError:
        return ""


def is_login_url(url: str, patterns: list[str]) -> bool:
    """Check whether ``url`` looks like one of the site's login pages."""
    return any(pattern in url for pattern in patterns)


async def detect_login_page(surface: RemoteSurface, patterns: list[str]) -> bool:
    """Check if we've been redirected to the login page."""
    return is_login_url(await surface.current_url(), patterns)
