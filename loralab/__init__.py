"""LoRA adapter training engine on PyTorch devices with quantized kernels."""

from loralab._version import __version__
from loralab.codec import (
    ValidationResult,
    convert_to_hf_format,
    deserialize,
    export_adapter,
    import_adapter,
    save_adapter,
    serialize,
    validate_adapter_file,
)
from loralab.config import PRESETS, AdapterConfig, RankSchedulerConfig, RankStrategy, TrainingConfig
from loralab.engine import TrainingEngine
from loralab.errors import (
    AdapterValidationError,
    ConfigError,
    LoraLabError,
    SetupError,
    StepError,
)
from loralab.model import ByteTokenizer, TinyCausalLM, TorchModelProvider, load_hf_model
from loralab.optim import FusedAdam8
from loralab.protocol import Message, MessageType
from loralab.scheduler import RankDecision, RankScheduler, create_rank_scheduler
from loralab.session import TrainingSession, TrainingStatus
from loralab.worker import TrainingWorker

__all__ = [
    "PRESETS",
    "AdapterConfig",
    "AdapterValidationError",
    "ByteTokenizer",
    "ConfigError",
    "FusedAdam8",
    "LoraLabError",
    "Message",
    "MessageType",
    "RankDecision",
    "RankScheduler",
    "RankSchedulerConfig",
    "RankStrategy",
    "SetupError",
    "StepError",
    "TinyCausalLM",
    "TorchModelProvider",
    "TrainingConfig",
    "TrainingEngine",
    "TrainingSession",
    "TrainingStatus",
    "TrainingWorker",
    "ValidationResult",
    "__version__",
    "convert_to_hf_format",
    "create_rank_scheduler",
    "deserialize",
    "export_adapter",
    "import_adapter",
    "load_hf_model",
    "save_adapter",
    "serialize",
    "validate_adapter_file",
]
