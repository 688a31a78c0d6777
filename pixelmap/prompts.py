"""
Prompt text sent with every sprite generation request.
"""

from typing import Optional

PROMPT_STYLE_GUIDANCE = (
    "The style must be 3D isometric pixel art. The object must be isolated on a plain "
    "white background with no shadows. Do not include any explanatory text in the "
    "response; output only the final image."
)

def build_image_prompt(location: Optional[str] = None) -> str:
    """Prompt for turning a travel photo into a sprite."""
    location_context = f"This photo was taken in {location}. " if location else ""
    return (
        "From the provided image, create a 3D isometric pixel art version of the key "
        f"object or building. {location_context}Consider the local architectural style "
        f"and cultural elements when creating the pixel art. {PROMPT_STYLE_GUIDANCE}"
    )

def build_edit_prompt(instruction: str, location: Optional[str] = None) -> str:
    """Prompt for a free-text edit of an existing sprite."""
    location_context = f"This is located in {location}. " if location else ""
    return f"{instruction}. {location_context}{PROMPT_STYLE_GUIDANCE}"
