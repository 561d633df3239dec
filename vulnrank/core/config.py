from typing import List

from pydantic_settings import BaseSettings

from vulnrank.core.constants import DEFAULT_SOURCES


class Settings(BaseSettings):
    PROJECT_NAME: str = "VulnRank"

    # Advisory source credentials
    GITHUB_TOKEN: str = ""
    NVD_API_KEY: str = ""

    # Source selection (JSON list in env, e.g. SOURCES='["osv","ghsa","kev"]')
    SOURCES: List[str] = list(DEFAULT_SOURCES)
    OFFLINE_MODE: bool = False

    # Enrichment retry policy (KEV, EPSS)
    ENRICHMENT_MAX_RETRIES: int = 3
    ENRICHMENT_RETRY_DELAY: float = 1.0

    # KEV catalog cache
    KEV_CACHE_TTL_HOURS: int = 4

    # Remediation
    REMEDIATION_TOP_N: int = 5

    # Shared HTTP client
    HTTP_TIMEOUT_SECONDS: float = 30.0

    class Config:
        case_sensitive = True
        env_file = ".env"


settings = Settings()
