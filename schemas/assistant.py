from typing import List, Optional, Dict, Any, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Utterance(BaseModel):
    role: str = "user"
    content: str
    timestamp: Optional[str] = None


class TurnRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    message: str = ""
    conversation_id: Optional[str] = None
    history: List[Utterance] = Field(default_factory=list)
    # stored context blob (camelCase dict, JSON text, or absent for a new conversation)
    context: Optional[Union[Dict[str, Any], str]] = None


class TurnResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    response: str
    context: Dict[str, Any]
    status: str
    ready_for_execution: bool = False
    conversation_id: Optional[str] = None
