import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # A bare list under 'watch' is shorthand for the folders list
    watch = data.get("watch")
    if isinstance(watch, list):
        data["watch"] = {"folders": watch}

    return AppConfig(**data)
