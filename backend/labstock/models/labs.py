from __future__ import annotations

from ..extensions import db
from labstock.time_utils import to_utc_z


class Department(db.Model):
    """
    Organizational unit owning one or more labs.

    Department CRUD lives outside the stock ledger; the ledger only reads
    departments to keep moves inside one department.
    """
    __tablename__ = "departments"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_departments_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "created_at": to_utc_z(self.created_at),
        }


class Lab(db.Model):
    __tablename__ = "labs"
    __table_args__ = (
        db.Index("ix_labs_department_name", "department_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True, index=True)

    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    department = db.relationship("Department", backref=db.backref("labs", lazy=True))

    def __repr__(self) -> str:
        return f"<Lab id={self.id} name={self.name!r} department_id={self.department_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department_id": self.department_id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
