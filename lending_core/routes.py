"""
Routes and Employees

A route groups the localities served by a set of leads and owns the cash
and bank accounts they operate. Leads disburse loans and collect weekly
payments; their route decides which accounts move.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .exceptions import RecordNotFoundError


class EmployeeType(Enum):
    """Roles in the field organisation"""
    ROUTE_LEAD = "route_lead"
    LEAD = "lead"
    ROUTE_ASSISTANT = "route_assistant"


@dataclass
class Route(StorageRecord):
    name: str


@dataclass
class Employee(StorageRecord):
    name: str
    employee_type: EmployeeType
    route_id: Optional[str] = None


class RouteManager:
    """Creates and looks up routes and the employees assigned to them"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.routes_table = "routes"
        self.employees_table = "employees"

    def create_route(self, name: str) -> Route:
        now = datetime.now(timezone.utc)
        route = Route(id=str(uuid.uuid4()), created_at=now, updated_at=now, name=name)
        self.storage.save(self.routes_table, route.id, route.to_dict())
        return route

    def get_route(self, route_id: str) -> Optional[Route]:
        data = self.storage.load(self.routes_table, route_id)
        return Route.from_dict(data) if data else None

    def create_employee(
        self,
        name: str,
        employee_type: EmployeeType = EmployeeType.LEAD,
        route_id: Optional[str] = None
    ) -> Employee:
        if route_id and not self.storage.exists(self.routes_table, route_id):
            raise RecordNotFoundError(f"Route {route_id} not found")

        now = datetime.now(timezone.utc)
        employee = Employee(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            employee_type=employee_type,
            route_id=route_id
        )
        self.storage.save(self.employees_table, employee.id, employee.to_dict())
        return employee

    def get_employee(self, employee_id: Optional[str]) -> Optional[Employee]:
        if not employee_id:
            return None
        data = self.storage.load(self.employees_table, employee_id)
        return Employee.from_dict(data) if data else None

    def require_employee(self, employee_id: Optional[str]) -> Employee:
        """Load an employee or raise RecordNotFoundError"""
        employee = self.get_employee(employee_id)
        if not employee:
            raise RecordNotFoundError(f"Employee {employee_id} not found")
        return employee

    def get_route_employees(self, route_id: str) -> List[Employee]:
        return [Employee.from_dict(data)
                for data in self.storage.find(self.employees_table, {'route_id': route_id})]
