"""Configuration de test pour pytest avec gestion des chemins.

Ce module configure pytest pour résoudre les imports `tenantrag` en ajoutant la racine du projet au
sys.path, neutralise l'environnement (Redis, clés API) avant la construction du conteneur global et
fournit des fabriques de pipeline à base de fakes.
"""

import os
import sys
from dataclasses import dataclass

import pytest

# Ensure project root is on sys.path so that
# imports like `from tenantrag...` resolve.
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# The global container is built at import time: keep it on in-memory stores.
for _var in ("REDIS_URL", "REQUIRE_REDIS", "OPENAI_API_KEY"):
    os.environ.pop(_var, None)
os.environ["ENV_FILE"] = os.path.join(CURRENT_DIR, ".env.tests-missing")

from tenantrag.apigw.admission import AdmissionController  # noqa: E402
from tenantrag.apigw.quota_store import InMemoryQuotaStore  # noqa: E402
from tenantrag.domain.context_assembler import ContextAssembler  # noqa: E402
from tenantrag.domain.orchestrator import PipelineConfig, PipelineOrchestrator  # noqa: E402
from tenantrag.domain.retriever import PermissionFilteredSearch  # noqa: E402
from tenantrag.infra.kv.memory import InMemoryKV  # noqa: E402
from tenantrag.infra.vecstores.memory_adapter import InMemoryVectorIndex  # noqa: E402
from tenantrag.services.embedding_cache import EmbeddingCache  # noqa: E402
from tenantrag.services.response_cache import ResponseCache  # noqa: E402
from tenantrag.services.retry import RetryPolicy  # noqa: E402
from tests.fakes import DIM, FakeClock, FakeEmbeddings, FakeLLM  # noqa: E402


@dataclass
class Pipeline:
    """Pipeline complet câblé sur des fakes, avec accès à chaque composant."""

    orchestrator: PipelineOrchestrator
    index: InMemoryVectorIndex
    kv: InMemoryKV
    embedder: FakeEmbeddings
    llm: FakeLLM
    admission: AdmissionController
    response_cache: ResponseCache
    clock: FakeClock


@pytest.fixture
def pipeline_factory():
    """Fabrique de pipelines; les paramètres surchargent les valeurs par défaut."""

    def _build(
        embedder=None,
        llm=None,
        index=None,
        tenant_limit: int = 100,
        user_limit: int = 20,
        token_budget: int = 400,
        score_threshold: float = 0.0,
        request_timeout_s: float = 5.0,
        top_k: int = 4,
    ) -> Pipeline:
        clock = FakeClock()
        kv = InMemoryKV(clock=clock)
        embedder = embedder or FakeEmbeddings()
        llm = llm or FakeLLM()
        index = index if index is not None else InMemoryVectorIndex(dimension=DIM)
        admission = AdmissionController(
            store=InMemoryQuotaStore(clock=clock),
            tenant_limit=tenant_limit,
            user_limit=user_limit,
            window_seconds=60,
        )
        response_cache = ResponseCache(kv)
        policy = RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=False)
        orchestrator = PipelineOrchestrator(
            admission=admission,
            response_cache=response_cache,
            embedding_cache=EmbeddingCache(embedder, kv, dimension=DIM),
            search=PermissionFilteredSearch(index, timeout_s=1.0),
            assembler=ContextAssembler(),
            llm=llm,
            config=PipelineConfig(
                top_k=top_k,
                score_threshold=score_threshold,
                token_budget=token_budget,
                request_timeout_s=request_timeout_s,
                retry_policy=policy,
            ),
        )
        return Pipeline(
            orchestrator=orchestrator,
            index=index,
            kv=kv,
            embedder=embedder,
            llm=llm,
            admission=admission,
            response_cache=response_cache,
            clock=clock,
        )

    return _build
