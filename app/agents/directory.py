"""Employee directory collaborator used to resolve run audiences."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import psycopg
from psycopg.rows import dict_row

from ..core.db import storage_call
from .schemas import AudienceSelector


@dataclass(frozen=True)
class Employee:
    id: str
    company_id: str
    full_name: str
    job_title: str | None = None
    department: str | None = None
    team_id: str | None = None
    is_active: bool = True


class EmployeeDirectory(Protocol):
    def resolve(self, company_id: str, audience: AudienceSelector) -> list[Employee]: ...

    def get_many(self, company_id: str, employee_ids: Iterable[str]) -> list[Employee]: ...


class InMemoryEmployeeDirectory:
    def __init__(self, employees: Iterable[Employee] = ()) -> None:
        self._lock = threading.Lock()
        self._employees: dict[str, Employee] = {}
        for employee in employees:
            self.add(employee)

    def add(self, employee: Employee) -> None:
        with self._lock:
            self._employees[employee.id] = employee

    def get_many(self, company_id: str, employee_ids: Iterable[str]) -> list[Employee]:
        wanted = list(dict.fromkeys(str(e) for e in employee_ids))
        with self._lock:
            found = [self._employees.get(employee_id) for employee_id in wanted]
        return [
            e for e in found if e is not None and e.company_id == company_id and e.is_active
        ]

    def resolve(self, company_id: str, audience: AudienceSelector) -> list[Employee]:
        if audience.type == "individual":
            return self.get_many(company_id, audience.employee_ids)
        with self._lock:
            employees = [
                e for e in self._employees.values() if e.company_id == company_id and e.is_active
            ]
        if audience.type == "team":
            employees = [e for e in employees if e.team_id == audience.team_id]
        return sorted(employees, key=lambda e: e.id)


class PostgresEmployeeDirectory:
    """Read employees from the company's ``employees`` table."""

    _COLUMNS = "id::text, company_id::text, full_name, job_title, department, team_id::text, is_active"

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _rows(self, sql: str, params: tuple) -> list[Employee]:
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            return [Employee(**row) for row in cur.fetchall()]

    @storage_call
    def get_many(self, company_id: str, employee_ids: Iterable[str]) -> list[Employee]:
        ids = list(dict.fromkeys(str(e) for e in employee_ids))
        if not ids:
            return []
        return self._rows(
            f"SELECT {self._COLUMNS} FROM employees "
            "WHERE company_id::text = %s AND id::text = ANY(%s) AND is_active ORDER BY id",
            (company_id, ids),
        )

    @storage_call
    def resolve(self, company_id: str, audience: AudienceSelector) -> list[Employee]:
        if audience.type == "individual":
            return self.get_many(company_id, audience.employee_ids)
        if audience.type == "team":
            return self._rows(
                f"SELECT {self._COLUMNS} FROM employees "
                "WHERE company_id::text = %s AND team_id::text = %s AND is_active ORDER BY id",
                (company_id, audience.team_id),
            )
        return self._rows(
            f"SELECT {self._COLUMNS} FROM employees "
            "WHERE company_id::text = %s AND is_active ORDER BY id",
            (company_id,),
        )
