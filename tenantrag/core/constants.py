"""Constantes partagées du pipeline (valeurs par défaut et codes)."""

# Tokens
CHARS_PER_TOKEN = 4
DEFAULT_TIKTOKEN_ENCODING = "cl100k_base"

# Recherche
CANDIDATE_MULTIPLIER = 2

# Réponses
NO_DATA_MESSAGE = (
    "No data is available to answer this question right now. Please try again later."
)
DEFAULT_SYSTEM_PROMPT = (
    "You answer questions using only the provided context passages. "
    "Cite passages by their [n] marker. If the context does not contain the answer, say so."
)

# HTTP
HTTP_STATUS_BAD_REQUEST = 400
HTTP_STATUS_TOO_MANY_REQUESTS = 429
HTTP_STATUS_SERVICE_UNAVAILABLE = 503

# Préfixes de clés
QUOTA_KEY_PREFIX = "quota"
EMBEDDING_KEY_PREFIX = "emb"
TENANT_TAG_PREFIX = "tenant:"
NAMESPACE_TAG_PREFIX = "ns:"
