from seedling_core.config import CoreConfig, load_core_config
from seedling_core.home import SeedlingPaths, ensure_seedling_layout, resolve_seedling_home

__version__ = "0.1.0"

__all__ = [
    "CoreConfig",
    "SeedlingPaths",
    "__version__",
    "ensure_seedling_layout",
    "load_core_config",
    "resolve_seedling_home",
]
