from .alignment import FeatureAligner
from .codebook import CodebookBuilder, build_pitch_mapping
from .config import (
    AggregationMode,
    CodebookTrainerConfig,
    DistanceMetric,
    FeatureParams,
    GaussianEliminatorParams,
    KMeansEliminatorParams,
    KMeansStrategy,
    PairingRule,
    StandardDeviations,
)
from .constants import CHANNEL_KEYS, NO_MATCH
from .corpus import CorpusLoader
from .elimination import EliminationResult, OutlierEliminationPipeline
from .errors import ConfigurationError, EliminationWarning, ItemError
from .features import ReferenceFeatureExtractor
from .mapping import IndexMap, IndexMapper
from .persistence import read_codebook, read_pitch_mapping, write_codebook, write_pitch_mapping
from .presets import build_preset_config
from .storage import FeatureCache
from .trainer import CodebookTrainer, TrainingResult
from .types import AdaptationSet, Codebook, FrameMapping, ItemFeatures, MappingTable, TrainingItem
