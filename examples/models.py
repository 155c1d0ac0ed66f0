"""Minimal models for sqla-relgraph examples."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import orm


class Base(orm.DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    departments: orm.Mapped[list[Department]] = orm.relationship(back_populates="company")


class Department(Base):
    __tablename__ = "departments"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    company_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("companies.id"))

    company: orm.Mapped[Company] = orm.relationship(back_populates="departments")
    employees: orm.Mapped[list[Employee]] = orm.relationship(back_populates="department")


class Employee(Base):
    __tablename__ = "employees"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    department_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("departments.id"))

    department: orm.Mapped[Department] = orm.relationship(back_populates="employees")
