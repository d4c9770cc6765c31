import os
from dotenv import load_dotenv

load_dotenv()


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. This conversation is being translated to voice, "
    "so answer carefully. When you respond, please spell out all numbers, for example "
    "twenty not 20. Do not include emojis in your responses. Do not include bullet "
    "points, asterisks, or special symbols."
)


class Config:
    # OpenAI
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")
    LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.3"))
    EXTRACTION_MODEL = os.getenv("EXTRACTION_MODEL", "gpt-4o-mini")
    EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")

    # Conversation
    SYSTEM_PROMPT = os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT)
    WELCOME_GREETING = os.getenv(
        "WELCOME_GREETING",
        "Hi! I am a voice assistant. Ask me anything!",
    )
    DEFAULT_AGENT_ID = os.getenv("DEFAULT_AGENT_ID", "default")

    # Telephony
    PUBLIC_DOMAIN = os.getenv("PUBLIC_DOMAIN", "localhost:8080")
    TTS_PROVIDER = os.getenv("TTS_PROVIDER", "ElevenLabs")
    TTS_VOICE = os.getenv("TTS_VOICE", "ZF6FPAbjXT4488VcRRnw-flash_v2_5-1.2_1.0_1.0")
    TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")

    # Data
    WORKFLOWS_FILE = os.getenv("WORKFLOWS_FILE", "data/workflows.json")
    KNOWLEDGE_FILE = os.getenv("KNOWLEDGE_FILE", "data/knowledge.json")

    # Knowledge retrieval
    KNOWLEDGE_PROBE_QUERY = os.getenv("KNOWLEDGE_PROBE_QUERY", "general information about the business")
    KNOWLEDGE_TOP_K = int(os.getenv("KNOWLEDGE_TOP_K", "5"))
    KNOWLEDGE_POLICY = os.getenv("KNOWLEDGE_POLICY", "all")
    KNOWLEDGE_CACHE_MAX_ENTRIES = int(os.getenv("KNOWLEDGE_CACHE_MAX_ENTRIES", "10000"))
    KNOWLEDGE_CACHE_TTL_SECONDS = (
        float(os.environ["KNOWLEDGE_CACHE_TTL_SECONDS"])
        if os.getenv("KNOWLEDGE_CACHE_TTL_SECONDS")
        else None
    )

    # Timeouts (seconds)
    EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "10"))
    VECTOR_QUERY_TIMEOUT = float(os.getenv("VECTOR_QUERY_TIMEOUT", "10"))
    COMPLETION_TIMEOUT = float(os.getenv("COMPLETION_TIMEOUT", "60"))
    TOKEN_IDLE_TIMEOUT = float(os.getenv("TOKEN_IDLE_TIMEOUT", "15"))
    EXTRACTION_TIMEOUT = float(os.getenv("EXTRACTION_TIMEOUT", "15"))
    ACTION_TIMEOUT = float(os.getenv("ACTION_TIMEOUT", "10"))
    TELEPHONY_TIMEOUT = float(os.getenv("TELEPHONY_TIMEOUT", "10"))
    TERMINATION_GRACE_SECONDS = float(os.getenv("TERMINATION_GRACE_SECONDS", "3"))

    # App
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", 8080))
    CORS_ORIGINS = [s.strip() for s in os.getenv("CORS_ORIGINS", "*").split(",")]
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.getenv("LOG_FORMAT", "json")

    @property
    def websocket_url(self) -> str:
        return f"wss://{self.PUBLIC_DOMAIN}/ws"


settings = Config()
