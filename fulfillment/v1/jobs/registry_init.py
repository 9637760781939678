"""
Stage processor registration.

Processors live outside this package. STAGE_PROCESSORS_MODULE names a module
exposing register_stage_processors(registry), which is imported once at
startup. The registry is frozen afterwards outside development.
"""

import importlib
import logging

from fulfillment.config.settings import Settings
from fulfillment.v1.core.registries import StageRegistry, stage_registry

logger = logging.getLogger(__name__)


def load_stage_processors(
    settings: Settings, registry: StageRegistry | None = None
) -> StageRegistry:
    """Import the configured processor module and register its stages."""
    registry = registry if registry is not None else stage_registry

    if registry.is_frozen():
        return registry

    module_path = settings.stage_processors_module
    if module_path:
        logger.info("Registering stage processors", extra={"module": module_path})
        module = importlib.import_module(module_path)
        register = getattr(module, "register_stage_processors", None)
        if register is None:
            raise RuntimeError(
                f"{module_path} does not define register_stage_processors(registry)"
            )
        register(registry)
    else:
        logger.warning("No stage processor module configured")

    if settings.environment != "development":
        registry.freeze()

    logger.info(
        "Stage processors registered", extra={"registered_stages": registry.list()}
    )
    return registry
