from pagesmith.domain.preprocessing.chain import build_chain, merge_resources
from pagesmith.domain.preprocessing.loader import Preprocessor, load_module, load_preprocessors
from pagesmith.domain.preprocessing.pool import WorkerPool
from pagesmith.domain.preprocessing.worker import run_preprocessor

__all__ = [
    "Preprocessor",
    "WorkerPool",
    "build_chain",
    "load_module",
    "load_preprocessors",
    "merge_resources",
    "run_preprocessor",
]
