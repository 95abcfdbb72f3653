"""
Template Library: generation presets for product videos.
Merchants pick a look, we send the matching prompt and timing to Veo.
"""

from typing import Optional

DEFAULT_ASPECT_RATIO = "16:9"

TEMPLATES = {
    "zoom-pan": {
        "id": "zoom-pan",
        "name": "Cinematic Zoom",
        "description": "Slow cinematic zoom with subtle movement",
        "prompt": (
            "Slow cinematic zoom on the product, subtle camera movement, professional "
            "product photography lighting, clean background"
        ),
        "duration": 4,
        "aspect_ratio": DEFAULT_ASPECT_RATIO,
        "thumbnail": "/templates/zoom-pan.jpg",
    },
    "lifestyle": {
        "id": "lifestyle",
        "name": "Lifestyle Scene",
        "description": "Product in a lifestyle context",
        "prompt": (
            "Product shown in elegant lifestyle setting, natural lighting, gentle ambient "
            "movement, aspirational context"
        ),
        "duration": 6,
        "aspect_ratio": DEFAULT_ASPECT_RATIO,
        "thumbnail": "/templates/lifestyle.jpg",
    },
    "360-spin": {
        "id": "360-spin",
        "name": "360° Spin",
        "description": "Product rotating 360 degrees",
        "prompt": (
            "Product smoothly rotating 360 degrees on clean background, professional studio "
            "lighting, seamless loop"
        ),
        "duration": 5,
        "aspect_ratio": DEFAULT_ASPECT_RATIO,
        "thumbnail": "/templates/360-spin.jpg",
    },
}


def get_template(template_id: str) -> Optional[dict]:
    """Look up a template by id. Returns None if it does not exist."""
    return TEMPLATES.get(template_id)


def get_all_templates() -> list[dict]:
    return list(TEMPLATES.values())
