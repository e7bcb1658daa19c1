import importlib
import logging
from typing import Callable, Dict

from errors import NoHandlerRegistered
from models import JobType, parse_job_type

logger = logging.getLogger(__name__)

# A handler takes the job's payload model and returns its output
# (or a JobResult). Raising means the attempt failed.
Handler = Callable


class HandlerRegistry:
    """Maps each JobType to exactly one handler."""

    def __init__(self):
        self._handlers: Dict[JobType, Handler] = {}

    def register(self, job_type, handler: Handler):
        job_type = parse_job_type(job_type)
        if job_type in self._handlers:
            logger.warning("Replacing handler for job type '%s'", job_type.value)
        self._handlers[job_type] = handler
        return handler

    def handler(self, job_type):
        """Decorator form of register()."""
        def decorator(fn):
            return self.register(job_type, fn)
        return decorator

    def get(self, job_type) -> Handler:
        job_type = parse_job_type(job_type)
        try:
            return self._handlers[job_type]
        except KeyError:
            raise NoHandlerRegistered(job_type.value) from None

    def types(self):
        return sorted(self._handlers, key=lambda t: t.value)

    def __contains__(self, job_type):
        return parse_job_type(job_type) in self._handlers

    def __len__(self):
        return len(self._handlers)


def load_registrar(path: str) -> Callable[[HandlerRegistry], None]:
    """
    Imports a registrar given as 'package.module:function'.
    The function receives a HandlerRegistry and registers handlers on it.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Handler registrar must look like 'module:function', got '{path}'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'") from None


def build_registry(registrar: str = None) -> HandlerRegistry:
    registry = HandlerRegistry()
    if registrar:
        load_registrar(registrar)(registry)
        logger.debug("Loaded handlers for %s from %s",
                     [t.value for t in registry.types()], registrar)
    return registry
