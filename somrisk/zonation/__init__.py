
from .schema import FeatureSchema
from .scaling import FeatureScaler, ScalingParameters
from .pseudo_absence import PseudoAbsenceSampler
from .som_trainer import SomGrid, SomTrainer, SOMOCLU_AVAILABLE
from .tiers import RiskTierClusterer
from .predictor import ZonationModel, ZonationPredictor, NO_DATA
from .quality import QualityEvaluator
from .smoothing import SpatialSmoother

__all__ = [
    'FeatureSchema', 'FeatureScaler', 'ScalingParameters', 'PseudoAbsenceSampler', 'SomGrid', 'SomTrainer',
    'RiskTierClusterer', 'ZonationModel', 'ZonationPredictor', 'QualityEvaluator', 'SpatialSmoother', 'NO_DATA',
    'SOMOCLU_AVAILABLE',
]
