"""
wcsfit: astrometric calibration of FITS images against a star catalog.
"""

__version__ = '0.1.0'

from .config_manager import CalibrationConfig, ConfigManager, load_config
from .pipeline import CalibrationPipeline, CalibrationResult, PipelineStage
from .transform import SkyProjection, TransformModel

__all__ = [
    'CalibrationConfig',
    'ConfigManager',
    'load_config',
    'CalibrationPipeline',
    'CalibrationResult',
    'PipelineStage',
    'SkyProjection',
    'TransformModel',
]
