"""Models package with all models."""
from .base import BaseModel
from .course import Course
from .enrollment import CourseEnrollment
from .attendance import AttendanceRecord

__all__ = [
    'BaseModel', 'Course', 'CourseEnrollment', 'AttendanceRecord'
]
