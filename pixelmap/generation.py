"""
Client for the generative image service that turns photos into sprites.
"""

import base64
import logging
from typing import Optional

from google import genai
from google.genai import types

from .error_handling import GenerationError
from .image_processing import placeholder_sprite_png

logger = logging.getLogger(__name__)

IMAGE_MODEL = "gemini-2.5-flash-image-preview"

class SpriteGenerator:
    """
    Sends a source image and a prompt to Gemini and returns generated image bytes.

    In dev mode no request is made and a placeholder tile is returned instead.
    """

    def __init__(self, api_key: Optional[str] = None, dev_mode: bool = False,
                 model: str = IMAGE_MODEL, client=None):
        self.api_key = api_key
        self.dev_mode = dev_mode
        self.model = model
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if not self.api_key:
                raise GenerationError(
                    "Gemini API key not found. Please provide your own API key in "
                    "Settings or contact the administrator."
                )
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def set_api_key(self, api_key: Optional[str]):
        """Use a user-supplied key from now on; the next request builds a new client."""
        self.api_key = api_key.strip() if api_key and api_key.strip() else None
        self._client = None

    def generate(self, image_data: bytes, mime_type: str, prompt: str) -> bytes:
        """
        Args:
            image_data: Encoded source image
            mime_type: Mime type of image_data
            prompt: Natural-language instruction

        Returns:
            bytes: The generated image

        Raises:
            GenerationError: If the service returns no image
        """
        if self.dev_mode:
            logger.info("DEV MODE: Skipping Gemini API call, returning placeholder")
            return placeholder_sprite_png()

        response = self.client.models.generate_content(
            model=self.model,
            contents=[
                types.Part.from_bytes(data=image_data, mime_type=mime_type),
                types.Part.from_text(text=prompt),
            ],
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE", "TEXT"],
            ),
        )

        text = None
        for candidate in (response.candidates or [])[:1]:
            for part in candidate.content.parts or []:
                if getattr(part, "inline_data", None) and part.inline_data.data:
                    data = part.inline_data.data
                    if isinstance(data, str):
                        data = base64.b64decode(data)
                    return data
                if getattr(part, "text", None):
                    text = part.text

        raise GenerationError(text or "No image was generated in the API response.")
