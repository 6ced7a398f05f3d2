from pathlib import Path
from typing import Any

from aiohttp import BodyPartReader, web

from ..config import Settings
from ..errors import ShopError, ValidationError
from ..utils.helpers import new_id
from ..utils.logger import logger

IMAGE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/avif": ".avif",
}


class ReviewImageUploader:
    """Stores review photos under ``<upload_dir>/reviews`` and hands back their public URLs."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.target_dir = Path(settings.upload_dir) / "reviews"

    def public_url(self, filename: str) -> str:
        return f"{self.settings.api_url}/uploads/reviews/{filename}"

    async def save_from_request(self, request: web.Request) -> list[dict[str, Any]]:
        if not request.content_type.startswith("multipart/"):
            raise ValidationError("Expected multipart/form-data upload", code="INVALID_CONTENT_TYPE")

        self.target_dir.mkdir(parents=True, exist_ok=True)
        reader = await request.multipart()
        saved: list[Path] = []
        uploads: list[dict[str, Any]] = []
        try:
            while True:
                part = await reader.next()
                if part is None:
                    break
                if not isinstance(part, BodyPartReader) or not part.filename:
                    continue
                if len(saved) >= self.settings.upload_max_files:
                    raise ValidationError(
                        f"At most {self.settings.upload_max_files} images can be uploaded at once",
                        code="TOO_MANY_FILES",
                    )
                uploads.append(await self._store_part(part, saved))
        except ShopError:
            for path in saved:
                path.unlink(missing_ok=True)
            raise

        if not uploads:
            raise ValidationError("No images uploaded", code="NO_FILES")
        logger.info(f"Stored {len(uploads)} review image(s)")
        return uploads

    async def _store_part(self, part: BodyPartReader, saved: list[Path]) -> dict[str, Any]:
        content_type = part.headers.get("Content-Type", "").split(";")[0].strip().lower()
        suffix = IMAGE_EXTENSIONS.get(content_type)
        if suffix is None:
            raise ValidationError(
                f"Only {', '.join(sorted(IMAGE_EXTENSIONS))} images are allowed",
                code="INVALID_FILE_TYPE",
            )

        filename = f"{new_id()}{suffix}"
        path = self.target_dir / filename
        saved.append(path)

        size = 0
        with path.open("wb") as handle:
            while True:
                chunk = await part.read_chunk()
                if not chunk:
                    break
                size += len(chunk)
                if size > self.settings.upload_max_bytes:
                    raise ValidationError(
                        f"Each image must be at most {self.settings.upload_max_bytes // (1024 * 1024)} MB",
                        code="FILE_TOO_LARGE",
                    )
                handle.write(chunk)

        return {
            "filename": filename,
            "originalName": part.filename,
            "contentType": content_type,
            "size": size,
            "url": self.public_url(filename),
        }
