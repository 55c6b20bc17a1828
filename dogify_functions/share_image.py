"""Share landing page with static Open Graph and Twitter card tags.

Crawlers do not run scripts, so every tag is rendered server-side and points
at the absolute serving URL of the image.
"""
import logging
from datetime import datetime
from html import escape
from string import Template

from .common import get_services, html_response
from .errors import DogifyError
from .serving import clean_image_id, is_valid_image_id

logger = logging.getLogger(__name__)

SHARE_CACHE_CONTROL = 'public, max-age=3600'
TITLE = 'Check out my $DOGified photo!'
DESCRIPTION = 'I used AI to add a cute dog to my photo! Create your own at dothink.in'

PAGE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>$title</title>
  <meta property="og:title" content="$title">
  <meta property="og:description" content="$description">
  <meta property="og:image" content="$image_url">
  <meta property="og:image:type" content="image/jpeg">
  <meta property="og:url" content="$share_url">
  <meta property="og:type" content="website">
  <meta property="og:site_name" content="$$DOGify - AI Photo Generator">
  <meta name="twitter:card" content="summary_large_image">
  <meta name="twitter:title" content="$title">
  <meta name="twitter:description" content="$description">
  <meta name="twitter:image" content="$image_url">
</head>
<body>
  <div class="share-page">
    <h1>$title</h1>
    <img src="$image_url" alt="AI Generated Dogified Image" class="shared-image">
    <p><a href="/dogify.html">Create your own $$DOGified photo</a></p>
    <details>
      <summary>Technical Details</summary>
      <p><strong>Generated:</strong> $created_at</p>
      <p><strong>Model:</strong> $model</p>
$extra
      <p><strong>Share URL:</strong> <code>$share_url</code></p>
    </details>
  </div>
</body>
</html>
""")

ERROR_PAGE = Template("""<!DOCTYPE html>
<html><head><title>$heading</title></head>
<body>
  <h1>$heading</h1>
  <p>$message</p>
  <p><a href="/dogify.html">Create your own $$DOGified photo</a></p>
</body></html>
""")


def error_page(status_code: int, heading: str, message: str = ''):
    return html_response(status_code, ERROR_PAGE.substitute(heading=escape(heading), message=escape(message)))


def _display_time(timestamp):
    try:
        return datetime.fromisoformat(timestamp).strftime('%Y-%m-%d %H:%M UTC')
    except (TypeError, ValueError):
        return timestamp or ''


def render_share_page(record, base_url: str) -> str:
    image_url = f"{base_url}/images/{record.id}"
    share_url = f"{base_url}/share/{record.id}"
    extra = []
    if record.scene_analysis:
        extra.append(f"      <p><strong>Scene Analysis:</strong> {escape(record.scene_analysis)}</p>")
    if record.generation_prompt:
        extra.append(f"      <p><strong>Generation Prompt:</strong> {escape(record.generation_prompt)}</p>")
    return PAGE.substitute(
        title=escape(TITLE),
        description=escape(DESCRIPTION),
        image_url=escape(image_url),
        share_url=escape(share_url),
        created_at=escape(_display_time(record.created_at)),
        model=escape(record.model_used or 'Venice AI'),
        extra='\n'.join(extra),
    )


def _image_id_from_path(event):
    image_id = (event.get('pathParameters') or {}).get('id')
    if image_id:
        return image_id
    segments = [segment for segment in (event.get('path') or event.get('rawPath') or '').split('/') if segment]
    return segments[-1] if segments else None


def lambda_handler(event, context, services=None):
    """
    Render the share page for GET /share/{id}
    """
    image_id = clean_image_id(_image_id_from_path(event))
    if not is_valid_image_id(image_id):
        return error_page(400, 'Invalid Image ID')

    try:
        services = services or get_services()
        record = services.require_metadata_store().get(image_id)
    except DogifyError as e:
        logger.error("Share page lookup failed id=%s kind=%s detail=%s", image_id, e.kind, e.detail)
        return error_page(500, 'Server Error', 'Sorry, there was an error loading this shared image.')

    if record is None:
        return error_page(404, 'Image Not Found',
                          'This $DOGified image may have been removed or the link is incorrect.')

    return html_response(200, render_share_page(record, services.settings.site_url), SHARE_CACHE_CONTROL)
