"""Resolve `module:attr` or `path/to/file.py:attr` to a WorkflowDefinition."""
import importlib
import importlib.util
import logging
import sys
from pathlib import Path

from core.errors import DefinitionError
from workflows.models import WorkflowDefinition

logger = logging.getLogger(__name__)

DEFAULT_ATTR = "workflow"


def _import_file(path: Path):
    name = f"loopwork_user_{path.stem}"
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise DefinitionError(f"Cannot import workflow file: {path}")
    module = importlib.util.module_from_spec(spec)
    # Allow sibling imports from the workflow file's directory
    sys.path.insert(0, str(path.parent.resolve()))
    try:
        spec.loader.exec_module(module)
    finally:
        sys.path.remove(str(path.parent.resolve()))
    return module


def load_definition(target: str) -> WorkflowDefinition:
    """Load a workflow. The attribute may be a definition or a zero-argument factory."""
    module_ref, _, attr = target.partition(":")
    attr = attr or DEFAULT_ATTR

    if module_ref.endswith(".py"):
        path = Path(module_ref)
        if not path.exists():
            raise DefinitionError(f"Workflow file not found: {path}")
        module = _import_file(path)
    else:
        try:
            module = importlib.import_module(module_ref)
        except ImportError as e:
            raise DefinitionError(f"Cannot import module '{module_ref}': {e}") from e

    obj = getattr(module, attr, None)
    if obj is None:
        raise DefinitionError(f"'{module_ref}' has no attribute '{attr}'")
    if callable(obj) and not isinstance(obj, WorkflowDefinition):
        obj = obj()
    if not isinstance(obj, WorkflowDefinition):
        raise DefinitionError(f"'{target}' is a {type(obj).__name__}, not a WorkflowDefinition")

    logger.debug(f"Loaded workflow '{obj.name}' from {target}")
    return obj
