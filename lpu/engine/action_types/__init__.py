# Ensure registration happens by importing modules
from .base import ActionStep, ActionType, action_registry  # noqa
from . import margin, overwrite  # noqa
