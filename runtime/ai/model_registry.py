"""
Model Registry - Single Source of Truth for Dehazing Models
"""

MODELS = {
    "oddnet": {
        "key": "oddnet",
        "label": "ODD-Net Dehazing (Default ⭐)",
        "filename": "oddnet_dehaze.onnx",
        "default": True
    },
    "aodnet": {
        "key": "aodnet",
        "label": "AOD-Net Lightweight",
        "filename": "aodnet_dehaze.onnx",
        "default": False
    }
}


def get_default_model():
    """Get the default model configuration."""
    for m in MODELS.values():
        if m.get("default"):
            return m
    return None


def get_model(key: str):
    """Get model configuration by key."""
    return MODELS.get(key)
