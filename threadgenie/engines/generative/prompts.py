"""Instructions sent to the generative model."""

EMBROIDERY_PROMPT = """
Transform this image into a high-quality, realistic embroidery patch.
The design should simulate stitched thread textures with high detail.
Use vibrant, thread-like colors.
CRITICAL: The background MUST be a solid, flat, pure white color (#FFFFFF) completely distinct from the subject to allow for easy background removal.
Ensure the edges of the patch are clean and simulate a stitched border.
""".strip()

EDIT_PROMPT_TEMPLATE = (
    "Edit this image based on the following instruction: {prompt}. "
    "Maintain the high quality. "
    "If the user asks for embroidery, use a realistic stitched texture style."
)

UPSCALE_PROMPT = (
    "Upscale this image to 4K resolution. "
    "Enhance details, sharpness, and texture clarity while strictly preserving "
    "the original content and style."
)


def build_edit_instruction(prompt: str) -> str:
    """Wrap a user's free-text edit request in the edit template."""
    return EDIT_PROMPT_TEMPLATE.format(prompt=prompt.strip())
