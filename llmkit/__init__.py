"""
llmkit - Chat and embedding inference over exported transformer models.

Runs autoregressive chat (ChatGLM, ChatGLM2/3, CodeGeeX2, Qwen, Qwen-VL,
Llama-2, Baichuan2, InternLM, Phi-2) and BGE sentence embeddings from
TorchScript artifacts, with a small text/vector store on top.

Quick Start:
    from llmkit import GenerationSession

    session = GenerationSession.create("models/qwen-1.8b")
    session.load("models/qwen-1.8b")
    session.respond("Hello!", sink=sys.stdout)

Submodules:
    - llmkit.engine.session: Generation session and decode loop
    - llmkit.engine.embedding: Embedding session
    - llmkit.engine.vector_store: Text/vector store
    - llmkit.engine.registry: Model family dispatch
"""

from llmkit._version import __version__

from llmkit.engine.embedding import EmbeddingSession
from llmkit.engine.errors import (
    ConfigurationError,
    ExecutionError,
    ImageFetchError,
    LlmkitError,
    ResourceError,
)
from llmkit.engine.module import BackendConfig, ExecutionEngine, ModuleHandle, TorchScriptEngine
from llmkit.engine.registry import list_model_families, register_family, resolve_family, resolve_model_type
from llmkit.engine.session import GenerationSession, SessionConfig, SessionPhase, repair_byte_token
from llmkit.engine.tokenizer import HFTokenizer, TokenizerAdapter, VocabTokenizer, load_tokenizer
from llmkit.engine.types import GenerateResponse, ModelInfo, Timing, Usage
from llmkit.engine.vector_store import TextVectorStore

# Runtime utilities
from llmkit.runtime import is_cuda_available, resolve_device

__all__ = [
    # Version
    "__version__",
    # Sessions
    "GenerationSession",
    "SessionConfig",
    "SessionPhase",
    "EmbeddingSession",
    "TextVectorStore",
    "repair_byte_token",
    # Dispatch
    "resolve_family",
    "resolve_model_type",
    "register_family",
    "list_model_families",
    # Execution engine
    "BackendConfig",
    "ExecutionEngine",
    "ModuleHandle",
    "TorchScriptEngine",
    # Tokenizers
    "TokenizerAdapter",
    "VocabTokenizer",
    "HFTokenizer",
    "load_tokenizer",
    # Types
    "GenerateResponse",
    "ModelInfo",
    "Timing",
    "Usage",
    # Errors
    "LlmkitError",
    "ConfigurationError",
    "ResourceError",
    "ExecutionError",
    "ImageFetchError",
    # Runtime
    "is_cuda_available",
    "resolve_device",
]
