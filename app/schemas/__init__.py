"""
app.schemas
~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.watch_party import (
    ChatMessage,
    ConnectionInfo,
    RoomStateSnapshot,
    RoomStatsData,
    Role,
    ServerEvent,
    StateOverviewData,
    VideoDescriptor,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
