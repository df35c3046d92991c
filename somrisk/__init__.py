
from . import io
from . import zonation
from . import evaluation
from .pipeline import ZonationPipeline

__all__ = ['io', 'zonation', 'evaluation', 'ZonationPipeline']
