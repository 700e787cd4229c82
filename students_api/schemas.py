# students_api/schemas.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class StudentIn(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    major: Optional[str] = None


class Student(BaseModel):
    id: int
    name: str
    email: str
    major: Optional[str] = None
    created_at: Optional[datetime] = None


class StudentResponse(BaseModel):
    success: bool = True
    data: Student


class StudentListResponse(BaseModel):
    success: bool = True
    data: List[Student]


class MessageResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str
