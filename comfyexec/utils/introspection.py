"""
Resolve paths relative to the project root (the directory holding the 'comfyexec' package).
"""
from pathlib import Path


def get_absolute_path(relative_path: str) -> Path:
    # comfyexec/utils -> comfyexec -> project root
    project_root = Path(__file__).resolve().parents[2]
    return project_root / relative_path
