"""Pydantic schemas for user preferences and listening sessions"""
from pydantic import BaseModel
from typing import Any, Dict, Optional


class PreferencesUpdate(BaseModel):
    preferences: Optional[Dict[str, Any]] = None


class ListeningSessionCreate(BaseModel):
    category: Optional[str] = None
    duration: Optional[int] = None  # minutes
