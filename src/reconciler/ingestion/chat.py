"""Chat channel adapters (Slack, WhatsApp, Telegram)."""

import logging
from typing import Any

from ..errors import ValidationFailure
from ..models import RawAttachment
from ..timeouts import TIMEOUTS
from .base import AttachmentAdapter, ensure_extension, http_get

logger = logging.getLogger(__name__)

# WhatsApp Cloud API and Telegram Bot API both cap media downloads at 20MB
CHAT_MAX_FILE_SIZE = 20 * 1024 * 1024


def _check_size(size: int, channel: str, file_id: str) -> None:
    if size and size > CHAT_MAX_FILE_SIZE:
        raise ValidationFailure(
            f"{channel} file {file_id} is {size} bytes, larger than {CHAT_MAX_FILE_SIZE}"
        )


class SlackAdapter(AttachmentAdapter):
    """Downloads files shared in Slack via the Web API."""

    channel = "slack"
    api_url = "https://slack.com/api"

    def __init__(self, bot_token: str):
        self.bot_token = bot_token

    def download(self, team_id: str, event: dict[str, Any]) -> RawAttachment:
        file_id = event["file_id"]
        headers = {"Authorization": f"Bearer {self.bot_token}"}

        info = http_get(f"{self.api_url}/files.info", headers=headers, params={"file": file_id}).json()
        if not info.get("ok"):
            raise ValidationFailure(f"Slack files.info failed for {file_id}: {info.get('error')}")
        file_info = info["file"]

        mimetype = event.get("mimetype") or file_info.get("mimetype") or "application/octet-stream"
        filename = ensure_extension(event.get("filename") or file_info.get("name") or file_id, mimetype)
        url = file_info.get("url_private_download") or file_info["url_private"]

        data = http_get(url, headers=headers, timeout=TIMEOUTS.file_transfer).content
        logger.info(f"Downloaded Slack file {file_id} ({len(data)} bytes)")

        return RawAttachment(
            team_id=team_id,
            data=data,
            mimetype=mimetype,
            filename=filename,
            reference_id=f"slack_{file_id}_{filename}",
            source_metadata={"channel": self.channel, "file_id": file_id, **event.get("source_metadata", {})},
        )


class WhatsAppAdapter(AttachmentAdapter):
    """Downloads media from the WhatsApp Cloud API."""

    channel = "whatsapp"

    def __init__(self, access_token: str, api_version: str = "v21.0"):
        self.access_token = access_token
        self.api_url = f"https://graph.facebook.com/{api_version}"

    def download(self, team_id: str, event: dict[str, Any]) -> RawAttachment:
        media_id = event["file_id"]
        headers = {"Authorization": f"Bearer {self.access_token}"}

        media = http_get(f"{self.api_url}/{media_id}", headers=headers).json()
        _check_size(int(media.get("file_size") or 0), self.channel, media_id)

        mimetype = media.get("mime_type") or event.get("mimetype") or "application/octet-stream"
        filename = ensure_extension(event.get("filename") or f"whatsapp_{media_id}", mimetype)

        data = http_get(media["url"], headers=headers, timeout=TIMEOUTS.file_transfer).content
        _check_size(len(data), self.channel, media_id)
        logger.info(f"Downloaded WhatsApp media {media_id} ({len(data)} bytes)")

        return RawAttachment(
            team_id=team_id,
            data=data,
            mimetype=mimetype,
            filename=filename,
            reference_id=f"whatsapp_{media_id}_{filename}",
            source_metadata={"channel": self.channel, "media_id": media_id, **event.get("source_metadata", {})},
        )


class TelegramAdapter(AttachmentAdapter):
    """Downloads documents and photos sent to a Telegram bot."""

    channel = "telegram"

    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self.api_url = f"https://api.telegram.org/bot{bot_token}"
        self.file_url = f"https://api.telegram.org/file/bot{bot_token}"

    def download(self, team_id: str, event: dict[str, Any]) -> RawAttachment:
        file_id = event["file_id"]

        response = http_get(f"{self.api_url}/getFile", params={"file_id": file_id}).json()
        if not response.get("ok"):
            raise ValidationFailure(f"Telegram getFile failed for {file_id}: {response.get('description')}")
        result = response["result"]
        _check_size(int(result.get("file_size") or 0), self.channel, file_id)

        # Photos arrive without a name or MIME type
        mimetype = event.get("mimetype") or "image/jpeg"
        filename = ensure_extension(event.get("filename") or f"telegram_{file_id}", mimetype)

        data = http_get(f"{self.file_url}/{result['file_path']}", timeout=TIMEOUTS.file_transfer).content
        logger.info(f"Downloaded Telegram file {file_id} ({len(data)} bytes)")

        return RawAttachment(
            team_id=team_id,
            data=data,
            mimetype=mimetype,
            filename=filename,
            reference_id=f"telegram_{file_id}_{filename}",
            source_metadata={"channel": self.channel, "file_id": file_id, **event.get("source_metadata", {})},
        )
