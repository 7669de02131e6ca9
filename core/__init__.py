"""
Core business logic - transport-agnostic.
Used by the web API and the background pipeline workers.
"""

# Database (SQLAlchemy)
from .database import get_engine, close_engine, is_configured

# Configuration
from .config import PipelineSettings, get_pipeline_settings

__all__ = [
    # Database (SQLAlchemy)
    'get_engine', 'close_engine', 'is_configured',
    # Configuration
    'PipelineSettings', 'get_pipeline_settings',
]
