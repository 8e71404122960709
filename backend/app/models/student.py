"""
Student model. Students are referenced by registrations but never owned by
them; bulk uploads resolve students by their school-issued registration number.
"""

from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class Student(Base, TimestampMixin):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    registration_no = Column(String(50), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    school_id = Column(Integer, nullable=False, index=True)

    registrations = relationship("EventRegistration", back_populates="student")

    def __repr__(self) -> str:
        return f"<Student(id={self.id}, registration_no={self.registration_no}, school={self.school_id})>"
