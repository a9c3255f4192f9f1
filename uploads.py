import logging

import requests

from config import Config
from errors import UpstreamFailure

logger = logging.getLogger(__name__)

CLOUDINARY_URL = "https://api.cloudinary.com/v1_1/{cloud_name}/image/upload"


def upload_photo(filename: str, content: bytes, content_type: str = "image/jpeg") -> str:
    """Push an image to Cloudinary with an unsigned preset; returns its secure URL."""
    if not Config.CLOUDINARY_CLOUD_NAME:
        raise UpstreamFailure("Photo storage not configured")

    url = CLOUDINARY_URL.format(cloud_name=Config.CLOUDINARY_CLOUD_NAME)
    try:
        response = requests.post(
            url,
            data={"upload_preset": Config.CLOUDINARY_UPLOAD_PRESET},
            files={"file": (filename, content, content_type)},
            timeout=Config.UPLOAD_TIMEOUT_SECONDS,
        )
    except requests.exceptions.RequestException as e:
        raise UpstreamFailure(f"Image upload failed: {e}", cause=e) from e

    if response.status_code != 200:
        raise UpstreamFailure(f"Image upload failed: HTTP {response.status_code}")

    secure_url = response.json().get("secure_url")
    if not secure_url:
        raise UpstreamFailure("Image upload returned no URL")
    logger.info(f"Uploaded photo {filename}")
    return secure_url
