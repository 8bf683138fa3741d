"""
Two-view meal volume and nutrition estimation

Modules:
    artifacts: capture / segmentation data contracts
    reconstruction: one view → partial 3D observation
    volume_fusion: top + side observations → volume estimate
    nutrition: volume + food class → mass and macros
    session: two-view capture state machine
    mask_processing: OpenCV mask cleanup
    offline: file-backed collaborators and pipeline runner
"""

from .artifacts import (
    CameraIntrinsics,
    CameraPose,
    CaptureArtifact,
    ClassificationResult,
    SegmentationArtifact,
    SegmentationResponse,
    Viewpoint,
)
from .config import FusionConfig, PipelineConfig, ReconstructionConfig, load_config
from .errors import (
    CollaboratorUnavailableError,
    InsufficientDataError,
    MealVolumeError,
    MisregistrationWarning,
    StagePreconditionError,
    UnknownClassError,
)
from .nutrition import FoodProfile, NutritionEstimate, NutritionProjector, NutritionTable
from .reconstruction import HeightProfile, PartialObservation, ViewReconstructor
from .session import CaptureSession, MealEstimate, SessionStage
from .volume_fusion import FusionMethod, VolumeEstimate, VolumeFusionEngine

__version__ = "0.1.0"
