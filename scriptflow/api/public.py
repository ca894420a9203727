"""Public, read-only script pages."""

from html import escape

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.config import get_settings
from scriptflow.db.session import get_db
from scriptflow.middleware.rate_limit import limiter
from scriptflow.services.public_links import is_valid_public_id
from scriptflow.services.script_store import script_store

router = APIRouter(tags=["Public"])

settings = get_settings()

FOUND_HEADERS = {
    "Cache-Control": "public, max-age=31536000, immutable",
    "X-Robots-Tag": "noindex, nofollow",
    "X-Content-Type-Options": "nosniff",
}

NOT_FOUND_HEADERS = {
    "Cache-Control": "no-store",
    "X-Robots-Tag": "noindex, nofollow",
    "X-Content-Type-Options": "nosniff",
}

PAGE_STYLE = """
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
         background: #09090b; color: #fafafa; min-height: 100vh; padding: 20px; }
  .idea { color: #a1a1aa; font-size: 14px; margin-bottom: 16px; }
  pre { white-space: pre-wrap; word-wrap: break-word; font-family: inherit;
        font-size: 17px; line-height: 1.6; background: #18181b;
        border-radius: 12px; padding: 20px; }
  button { position: fixed; left: 20px; right: 20px; bottom: 20px; padding: 16px;
           font-size: 17px; font-weight: 700; border: 0; border-radius: 12px;
           background: #22d3ee; color: #09090b; }
  .missing { text-align: center; margin-top: 30vh; color: #a1a1aa; }
"""


def render_script_page(script_text: str, idea: str) -> str:
    """Minimal HTML page showing the script with a copy button. All user text is escaped."""
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <meta name="robots" content="noindex, nofollow">
  <title>Your Script</title>
  <style>{PAGE_STYLE}</style>
</head>
<body>
  <p class="idea">{escape(idea)}</p>
  <pre id="script">{escape(script_text)}</pre>
  <button id="copy" type="button">Copy script</button>
  <script>
    document.getElementById('copy').addEventListener('click', function () {{
      var text = document.getElementById('script').innerText;
      navigator.clipboard.writeText(text).then(function () {{
        document.getElementById('copy').innerText = 'Copied!';
      }});
    }});
  </script>
</body>
</html>"""


def render_not_found_page() -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <meta name="robots" content="noindex, nofollow">
  <title>Script not found</title>
  <style>{PAGE_STYLE}</style>
</head>
<body>
  <p class="missing">Script not found.</p>
</body>
</html>"""


def _not_found() -> HTMLResponse:
    return HTMLResponse(render_not_found_page(), status_code=404, headers=NOT_FOUND_HEADERS)


@router.get(
    settings.public_path + "/{public_id}",
    response_class=HTMLResponse,
    summary="View a script",
    description="Public read-only page for a generated script.",
)
@limiter.limit(settings.public_page_rate_limit)
async def view_script(
    request: Request,
    public_id: str,
    db: AsyncSession = Depends(get_db),
):
    # Malformed IDs never reach the store and look exactly like missing ones
    if not is_valid_public_id(public_id):
        return _not_found()

    script = await script_store.get_by_public_id(db, public_id)
    if script is None:
        return _not_found()

    return HTMLResponse(
        render_script_page(script.result_text, script.idea),
        headers=FOUND_HEADERS,
    )
