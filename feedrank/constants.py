"""
Constants and configuration values for feed ranking.
"""

# Time
SECONDS_PER_HOUR = 3600

# Background Cycle
CYCLE_INTERVAL_SECONDS = 120  # 2 min between full cycles
STARTUP_DELAY_SECONDS = 5  # Let the caller finish loading before the first cycle

# Feed Fetching
PARALLEL_FEEDS = 6  # Feeds fetched concurrently per batch
FEED_BATCH_DELAY_SECONDS = 0.5  # Pause between feed batches within a cycle
PER_HOST_MIN_INTERVAL_SECONDS = 3.0  # Min seconds between requests to one host
DEFAULT_HOST_BUCKET = "_default"
FEED_HTTP_TIMEOUT = 10.0
FEED_USER_AGENT = "feedrank/0.1 (+rss reader)"
DESCRIPTION_MAX_CHARS = 5000

# Embeddings
EMBED_BATCH_SIZE = 10  # Items embedded per batch
EMBED_BATCH_DELAY_SECONDS = 0.2
EMBED_BACKLOG_FACTOR = 5  # Backlog pulled per run = factor * batch size
EMBED_TITLE_MAX_CHARS = 2000
EMBED_DESCRIPTION_MAX_CHARS = 4000
EMBED_PROMPT_MAX_CHARS = 8000
EMBED_CONCURRENCY = 5  # Embedding lookups in flight while ranking

# Clustering
CLUSTER_SIMILARITY_THRESHOLD = 0.82  # High: only near-identical stories merge
CLUSTER_MAX_AGE_SECONDS = 48 * SECONDS_PER_HOUR
CLUSTER_POOL_LIMIT = 500
CLUSTER_WORK_LIMIT = 200

# Newsworthiness
NEWSWORTHINESS_BATCH_SIZE = 5  # LLM calls are slow
NEWSWORTHINESS_MAX_AGE_SECONDS = 24 * SECONDS_PER_HOUR
NEWSWORTHINESS_SUMMARY_MAX_CHARS = 500
NEWSWORTHINESS_MIN = 1
NEWSWORTHINESS_MAX = 10
NEWSWORTHINESS_NEUTRAL = 5
NEWSWORTHINESS_FALLBACK_REASON = "auto: unparseable LLM response"

# Ranking Weights
RECENCY_WEIGHT = 1.0
RECENCY_HALF_DAY_HOURS = 24  # recency = 1 / (1 + hours / 24)
ENGAGEMENT_WEIGHT = 0.6
SOURCE_REP_WEIGHT = 0.5
CLUSTER_WEIGHT = 0.4
CLUSTER_CAP = 3  # Effective cluster size cap
AFFINITY_WEIGHT = 1.0
NEWSWORTHINESS_WEIGHT = 0.8
MORE_LIKE_THIS_WEIGHT = 1.2
MORE_LIKE_THIS_WINDOW = 50
FOR_YOU_SEED_COUNT = 25
FOR_YOU_SIMILARITY_WEIGHT = 1.4
RANKING_POOL_SIZE = 300
INTEREST_PROFILE_SIZE = 30
DEFAULT_PAGE_LIMIT = 20

# Topics
TOPIC_ALL = "all"
TOPIC_FOR_YOU = "for_you"
TOPIC_OTHER = "other"
TOPIC_GENERAL = "general"  # Legacy default for unclassified rows

# Read Filter
READ_FILTER_UNREAD = "unread"
READ_FILTER_READ = "read"
READ_FILTERS = (READ_FILTER_UNREAD, READ_FILTER_READ)

# Engagement
EVENT_OPEN = "open"
EVENT_VIEW = "view"
EVENT_MORE_LIKE = "more_like"
EVENT_LESS_LIKE = "less_like"
EVENT_TYPES = (EVENT_OPEN, EVENT_VIEW, EVENT_MORE_LIKE, EVENT_LESS_LIKE)
POSITIVE_EVENT_TYPES = (EVENT_OPEN, EVENT_VIEW, EVENT_MORE_LIKE)

# LLM Configuration (Ollama)
OLLAMA_DEFAULT_URL = "http://127.0.0.1:11434"
OLLAMA_EMBED_MODEL = "nomic-embed-text"
OLLAMA_GENERATE_MODEL = "llama3.1:8b"
LLM_TEMPERATURE = 0.2
AVAILABILITY_TTL_SECONDS = 60.0
AVAILABILITY_TIMEOUT = 2.0
EMBED_HTTP_TIMEOUT = 10.0
GENERATE_HTTP_TIMEOUT = 60.0
LLM_MAX_RETRIES = 3
LLM_MIN_REQUEST_INTERVAL = 1.0  # Seconds between generation requests
RETRY_BACKOFF_BASE = 0.5
RETRY_BACKOFF_MAX = 8.0
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
