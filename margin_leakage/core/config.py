# margin_leakage/core/config.py
"""Application configuration management."""

from typing import List, Optional
from dataclasses import dataclass
from functools import lru_cache
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

@dataclass
class Settings:
    """Application settings with environment variable support."""

    # API Settings
    app_name: str = "Margin Leakage Analyzer API"
    app_version: str = "1.0.0"
    debug: bool = False
    app_domain: str = "http://localhost:8000"

    # CORS Settings
    cors_origins: List[str] = None
    cors_methods: List[str] = None
    cors_headers: List[str] = None

    # File Processing Settings
    max_file_size: int = 100 * 1024 * 1024  # 100MB
    allowed_file_extensions: List[str] = None

    # Storage Settings
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "Project0"
    mongodb_bucket: str = "excelFiles"

    # Vertex AI Settings
    vertex_project: Optional[str] = None
    vertex_location: str = "us-central1"

    # OpenRouter Settings
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "deepseek/deepseek-r1:free"

    # Session Management
    session_timeout_minutes: int = 60

    def __post_init__(self):
        """Initialize default values and read from environment."""
        if self.cors_origins is None:
            self.cors_origins = ["*"]
        if self.cors_methods is None:
            self.cors_methods = ["*"]
        if self.cors_headers is None:
            self.cors_headers = ["*"]
        if self.allowed_file_extensions is None:
            self.allowed_file_extensions = [".xlsx", ".xls", ".csv"]

        # Read from environment variables
        self.debug = os.getenv("MARGIN_DEBUG", "false").lower() == "true"
        self.app_domain = os.getenv("MARGIN_APP_DOMAIN", self.app_domain)
        self.mongodb_uri = os.getenv("MONGODB_URI", self.mongodb_uri)
        self.mongodb_db = os.getenv("MONGODB_DB", self.mongodb_db)
        self.mongodb_bucket = os.getenv("MONGODB_BUCKET", self.mongodb_bucket)
        self.vertex_project = os.getenv("VERTEX_AI_PROJECT", self.vertex_project)
        self.vertex_location = os.getenv("VERTEX_AI_LOCATION", self.vertex_location)
        self.openrouter_api_key = os.getenv("OPENROUTER_API_KEY", self.openrouter_api_key)
        self.openrouter_base_url = os.getenv("OPENROUTER_BASE_URL", self.openrouter_base_url)
        self.openrouter_model = os.getenv("OPENROUTER_MODEL", self.openrouter_model)

class AnalysisConfig:
    """Configuration for margin analysis parameters."""

    # Per-step model and sampling settings
    MARGIN_STEPS = {
        "pricing": {
            "model": "gemini-2.0-flash-exp",
            "sample_rows": 200,
            "analyze_fields": ["list_price", "net_price", "discount_pct", "cost"],
            "price_thresholds": {},
        },
        "costs": {
            "model": "gemini-2.5-flash-lite",
            "sample_rows": 50,
            "cost_fields": ["cost", "cogs", "unit_cost"],
            "margin_thresholds": {"min_margin_pct": 10, "target_margin_pct": 30},
        },
        "leakage": {
            "model": "gemini-2.0-flash-exp",
            "sample_rows": 200,
            "leakage_rules": ["net_price < cost", "margin_pct < 5", "discount_pct > 50"],
            "priority_threshold": 1000,
        },
        "segments": {
            "model": "gemini-2.5-flash-lite",
            "sample_rows": 200,
            "segment_fields": ["customer_id", "customer_segment", "product_category"],
            "analysis_type": "margin_by_segment",
        },
        "recommendations": {
            "model": "gemini-2.5-flash-lite",
            "sample_rows": 50,
            "recommendation_types": ["pricing_optimization", "cost_reduction", "segment_targeting"],
        },
    }

    # Rule checks and free-form analysis
    CHECKS = {
        "checks_model": "gemini-2.5-flash-lite",
        "checks_max_rows": 2000,
        "checks_attempts": 3,
        "logical_rules": ["net_price<=0", "discount_pct>100", "fk:product_id->products.product_id"],
        "outlier_column": "discount_pct",
        "outlier_methods": ["percentile", "zscore"],
        "outlier_thresholds": {"percentile_upper": 0.99, "zscore": 3, "business_upper_pct": 50},
        "analyze_temperature": 0.7,
        "analyze_max_tokens": 1000,
    }

    # Combine settings
    COMBINE = {
        "combine_sample_rows": 3,
        "combine_temperature": 0.1,
        "combine_max_tokens": 8192,
        "combine_timeout_seconds": 180,
        "combine_sheet_name": "Combined Data",
    }

    # Core Analysis Configuration
    DEFAULT_CONFIG = {
        "preview_rows": 100,
        "product_column_hints": ["product_id", "product", "sku", "item"],
        "customer_column_hints": ["customer_id", "customer", "client", "account", "buyer"],
        "net_price_column_hints": ["net_price", "netprice", "sale_price", "price_paid", "unit_price"],
        "list_price_column_hints": ["list_price", "listprice", "msrp", "base_price"],
        "cost_column_hints": ["cost", "cogs", "unit_cost"],
        "quantity_column_hints": ["quantity", "qty", "units", "volume"],
        "discount_column_hints": ["discount_pct", "discount", "disc"],
        "low_margin_threshold_pct": 20,
        "worst_performers": 5,
        "sample_limit": 5,

        # Include all analysis configurations
        **CHECKS,
        **COMBINE,
    }

@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()

@lru_cache()
def get_analysis_config() -> dict:
    """Get cached analysis configuration."""
    return AnalysisConfig.DEFAULT_CONFIG.copy()

def get_step_config(step: str) -> dict:
    """Get a copy of the defaults for one margin step."""
    return dict(AnalysisConfig.MARGIN_STEPS[step])
