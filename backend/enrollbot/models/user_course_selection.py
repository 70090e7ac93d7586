"""
UserCourseSelection model.

Standing course selections a user keeps between launches. They are copied
into SessionCourse rows when a session starts without an explicit target list.
"""

from sqlalchemy import Column, String, ForeignKey
from sqlalchemy.orm import relationship

from enrollbot.models.base import Base, TimestampMixin


class UserCourseSelection(Base, TimestampMixin):
    __tablename__ = "user_course_selections"

    username = Column(
        String(64),
        ForeignKey("users.username", ondelete="CASCADE"),
        primary_key=True
    )
    course_id = Column(String(64), primary_key=True)
    course_section = Column(String(32), primary_key=True)

    user = relationship("User", back_populates="course_selections")

    def __repr__(self) -> str:
        return (
            f"<UserCourseSelection(username={self.username}, course={self.course_id}, "
            f"section={self.course_section})>"
        )
