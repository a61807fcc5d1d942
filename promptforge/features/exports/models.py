"""Export request/response models."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class PromptTestResult(BaseModel):
    test_name: str
    passed: bool
    score: float = 0.0
    details: str = ""
    timestamp: Optional[datetime] = None


class PromptEditResult(BaseModel):
    edit_type: str
    confidence: float = 0.0
    changes: str = ""
    timestamp: Optional[datetime] = None


class PromptDocument(BaseModel):
    """A generated prompt as handed over by the client for export."""

    model_config = ConfigDict(frozen=True)

    module_id: Union[int, str]
    content: str = Field(min_length=1)
    # Ends up in download filenames
    session_hash: str = Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")
    vector: Optional[str] = None
    score: float = 0.0
    # Seven dimensions: domain, scale, urgency, complexity, resources, application, output
    config: Dict[str, Any] = Field(default_factory=dict)
    generated_at: Optional[datetime] = None


class ExportRequest(BaseModel):
    formats: List[str] = Field(default_factory=list)
    prompt: PromptDocument
    test_results: List[PromptTestResult] = Field(default_factory=list)
    edit_results: List[PromptEditResult] = Field(default_factory=list)


class DownloadRequest(BaseModel):
    format: str
    prompt: PromptDocument
    test_results: List[PromptTestResult] = Field(default_factory=list)
    edit_results: List[PromptEditResult] = Field(default_factory=list)
