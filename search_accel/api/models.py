"""
Pydantic models for the acceleration API requests and responses.

Field names on the wire are camelCase (``cacheKey``, ``sessionId``) to match
what the search page scripts send and read.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List


class CacheCheckResponse(BaseModel):
    """Response model for the cache existence probe."""
    model_config = ConfigDict(populate_by_name=True)

    exists: bool = Field(description="Whether search results for the query are cached")
    cache_key: Optional[str] = Field(default=None, alias="cacheKey")
    ttl: Optional[int] = Field(default=None, description="Seconds until the entry expires")
    timestamp: str
    error: Optional[str] = None


class PrefetchResponse(BaseModel):
    """Acknowledgement returned by /prefetch before any work is done."""
    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(description="'accepted' or 'ignored'")
    cache_key: str = Field(alias="cacheKey")
    query: str
    message: str = ""


class PreRenderRequest(BaseModel):
    """Request model for /pre-render."""
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1, description="Query the user is about to be redirected to")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    collection: Optional[str] = None
    profile: Optional[str] = None


class PreRenderResponse(BaseModel):
    """Acknowledgement returned by /pre-render."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    accepted: bool
    cache_key: str = Field(alias="cacheKey")
    query: str
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class TabPreloadRequest(BaseModel):
    """Request model for /tabs/preload."""
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1)
    tabs: List[str] = Field(default_factory=list, description="Tab ids to warm")
    current_tab: Optional[str] = Field(default=None, alias="currentTab")
    collection: Optional[str] = None
    profile: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class TabPreloadResponse(BaseModel):
    """Response model for /tabs/preload."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    scheduled: List[str] = Field(default_factory=list, description="Cache keys being warmed")


class InvalidateResponse(BaseModel):
    """Response model for cache invalidation."""
    pattern: str
    deleted: int


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    version: str
    cache: Dict[str, Any] = Field(default_factory=dict)
