import os
import uuid

_MIME_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
}


def _ext_from_mime(mime_type: str) -> str:
    mime = (mime_type or "").lower().split(";", 1)[0].strip()
    return _MIME_EXTENSIONS.get(mime, ".bin")


class LocalMediaStore:
    def __init__(self, root_dir: str, url_prefix: str):
        self.root_dir = root_dir
        self.url_prefix = url_prefix.rstrip("/")

    def save_media_bytes(self, data: bytes, mime_type: str, *, folder: str | None = None) -> tuple[str, str]:
        """Write `data` under the media root and return (file_path, public_url)."""
        target_dir = os.path.join(self.root_dir, folder) if folder else self.root_dir
        os.makedirs(target_dir, exist_ok=True)

        filename = f"{uuid.uuid4()}{_ext_from_mime(mime_type)}"
        file_path = os.path.join(target_dir, filename)

        with open(file_path, "wb") as f:
            f.write(data)

        relative = f"{folder}/{filename}" if folder else filename
        return file_path, f"{self.url_prefix}/{relative}"
