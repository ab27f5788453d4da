"""Configuration management for the Passage Optimizer service."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
HUGGINGFACE_API_KEY = os.getenv("HUGGINGFACE_API_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173"
).split(",")

# Model Configuration
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-mpnet-base-v2")
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "64"))  # texts per provider call
EMBEDDING_WARMUP = os.getenv("EMBEDDING_WARMUP", "true").lower() == "true"  # cold-start the model at boot
GENERATION_MODEL = os.getenv("GENERATION_MODEL", "llama-3.3-70b-versatile")
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "4096"))
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.4"))

# Chunking Configuration
FIXED_CHUNK_SIZE = 500  # characters
MAX_CHUNK_TOKENS = 512  # body tokens, heading cascade excluded
CHUNK_OVERLAP_TOKENS = 50
MAX_SENTENCES_PER_CHUNK = int(os.getenv("MAX_SENTENCES_PER_CHUNK", "20"))  # sentence-level chamfer cost cap

# Query assignment
ASSIGNMENT_MIN_SCORE = float(os.getenv("ASSIGNMENT_MIN_SCORE", "0.3"))

# Brief generation throttling
BRIEF_BATCH_SIZE = int(os.getenv("BRIEF_BATCH_SIZE", "5"))
BRIEF_BATCH_DELAY_SECONDS = float(os.getenv("BRIEF_BATCH_DELAY_SECONDS", "1.0"))
BRIEF_MAX_RETRIES = int(os.getenv("BRIEF_MAX_RETRIES", "2"))

# Pipeline deadlines
STAGE_TIMEOUT_SECONDS = float(os.getenv("STAGE_TIMEOUT_SECONDS", "120"))

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
