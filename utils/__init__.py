# Microlearn utilities
from .model_config import (
    ModelConfig,
    ModelProvider,
    MODEL_CONFIGS,
    DEFAULT_MODEL
)
from .exceptions import MicrolearnError
from .json_extract import extract_json

__all__ = [
    'ModelConfig',
    'ModelProvider',
    'MODEL_CONFIGS',
    'DEFAULT_MODEL',
    'MicrolearnError',
    'extract_json'
]
