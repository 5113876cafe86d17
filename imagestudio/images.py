import logging
import os
import uuid
from io import BytesIO

import httpx
from flask import current_app
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from PIL import Image, ImageOps, UnidentifiedImageError
from werkzeug.utils import secure_filename

from .errors import ProviderError, ValidationError
from .logs import log_step

logger = logging.getLogger(__name__)

EDIT_PROMPT_TEMPLATE = (
    "Based on this image, create a new image with the following changes: {prompt}. "
    "Maintain the overall style and composition while making the requested modifications."
)

MAX_INPUT_SIDE = 1024


def load_input_image(data):
    """Open uploaded bytes; longest side = 1024 px, aspect ratio kept."""
    try:
        img = Image.open(BytesIO(data))
        img = ImageOps.exif_transpose(img).convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValidationError("Uploaded file is not a valid image.") from e
    w, h = img.size
    longest = max(w, h)
    if longest > MAX_INPUT_SIDE:
        scale = MAX_INPUT_SIDE / float(longest)
        img = img.resize((max(1, int(round(w * scale))), max(1, int(round(h * scale)))), Image.LANCZOS)
    return img


class ImageProvider:
    def __init__(self, api_key, model, timeout=60):
        self.model = model
        self._client = None
        if api_key:
            # HttpOptions.timeout is in milliseconds
            self._client = genai.Client(
                api_key=api_key, http_options=types.HttpOptions(timeout=int(timeout * 1000))
            )

    @classmethod
    def from_config(cls, config):
        return cls(config.get("GOOGLE_API_KEY"), config["IMAGE_MODEL"], config.get("IMAGE_API_TIMEOUT", 60))

    def _generate(self, step, contents):
        if self._client is None:
            raise ProviderError("image provider is not configured", step=step)
        try:
            response = self._client.models.generate_content(model=self.model, contents=contents)
        except genai_errors.APIError as e:
            log_step(logger, "Image provider error", logging.ERROR, step=step, code=e.code, error=str(e))
            raise ProviderError(f"image provider error during {step}", step=step) from e
        except httpx.HTTPError as e:
            log_step(logger, "Image provider unreachable", logging.ERROR, step=step, error=str(e))
            raise ProviderError(f"image provider unreachable during {step}", step=step) from e

        candidates = response.candidates or []
        parts = candidates[0].content.parts if candidates and candidates[0].content else []
        image_parts = [part.inline_data.data for part in parts or [] if part.inline_data]
        if not image_parts:
            log_step(logger, "No image in provider response", logging.ERROR, step=step)
            raise ProviderError("No image was generated in the response", step=step)
        return Image.open(BytesIO(image_parts[0]))

    def generate(self, prompt):
        log_step(logger, "Generating image", model=self.model)
        return self._generate("generate", [prompt])

    def edit(self, image, prompt):
        """Edit a Pillow image (see ``load_input_image``) according to ``prompt``."""
        log_step(logger, "Editing image", model=self.model, size=image.size)
        return self._generate("edit", [image, EDIT_PROMPT_TEMPLATE.format(prompt=prompt)])


def get_image_provider():
    provider = current_app.extensions.get("image_provider")
    if provider is None:
        provider = ImageProvider.from_config(current_app.config)
        current_app.extensions["image_provider"] = provider
    return provider


def save_output(image, user_id, generation_type):
    """Write a generated PNG under OUTPUT_FOLDER and return its path on disk."""
    folder = os.path.join(current_app.config["OUTPUT_FOLDER"], secure_filename(user_id) or "anonymous")
    os.makedirs(folder, exist_ok=True)
    filename = f"{uuid.uuid4().hex}-{generation_type}.png"
    path = os.path.join(folder, filename)
    image.save(path, format="PNG")
    return path
