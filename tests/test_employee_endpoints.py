import unittest
from collections.abc import Generator
from datetime import datetime, timezone

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from zeitnachweis.db import Base, get_db
from zeitnachweis.main import app
from zeitnachweis.models import Employee, TimesheetUpload
from zeitnachweis.security import require_admin_session


def _make_session() -> Session:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)()


def override_get_db(session: Session):
    def _override() -> Generator[Session, None, None]:
        yield session

    return _override


class EmployeeEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = _make_session()
        app.dependency_overrides[get_db] = override_get_db(self.session)
        app.dependency_overrides[require_admin_session] = lambda: "test-admin-token"
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.session.close()

    def _add_employee(self, firstname: str, lastname: str, email: str, *, active: bool = True) -> Employee:
        employee = Employee(firstname=firstname, lastname=lastname, email=email, is_active=active)
        self.session.add(employee)
        self.session.commit()
        return employee

    def test_create_employee_from_full_name(self) -> None:
        response = self.client.post("/api/employees", json={"name": "Max Mustermann", "email": "Max@Example.de"})

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["firstname"], "Max")
        self.assertEqual(body["lastname"], "Mustermann")
        self.assertEqual(body["name"], "Max Mustermann")
        self.assertEqual(body["email"], "max@example.de")
        self.assertTrue(body["active"])

    def test_create_employee_with_multi_word_last_name(self) -> None:
        response = self.client.post(
            "/api/employees",
            json={"name": "Anna von der Heide", "email": "anna@example.de"},
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["lastname"], "von der Heide")

    def test_duplicate_email_is_rejected(self) -> None:
        self._add_employee("Max", "Mustermann", "max@example.de")

        response = self.client.post("/api/employees", json={"name": "Max Zwei", "email": "MAX@example.de"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "DUPLICATE_EMAIL")
        self.assertEqual(self.session.scalar(select(func.count(Employee.id))), 1)

    def test_missing_fields_are_rejected(self) -> None:
        response = self.client.post("/api/employees", json={"email": "max@example.de"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "MISSING_FIELDS")

        response = self.client.post("/api/employees", json={"name": "Max Mustermann", "email": "kaputt"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_EMAIL")

    def test_create_employee_requires_admin_session(self) -> None:
        app.dependency_overrides.pop(require_admin_session)

        response = self.client.post("/api/employees", json={"name": "Max Mustermann", "email": "max@example.de"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "MISSING_TOKEN")

    def test_list_employees_is_ordered_by_last_name(self) -> None:
        self._add_employee("Zoe", "Zimmer", "zoe@example.de")
        self._add_employee("Anna", "Albers", "anna@example.de", active=False)
        self._add_employee("Max", "Mustermann", "max@example.de")

        response = self.client.get("/api/employees")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["lastname"] for item in response.json()], ["Albers", "Mustermann", "Zimmer"])

        response = self.client.get("/api/employees", params={"include_inactive": "false"})
        self.assertEqual([item["lastname"] for item in response.json()], ["Mustermann", "Zimmer"])

    def test_status_reports_upload_per_active_employee(self) -> None:
        max_employee = self._add_employee("Max", "Mustermann", "max@example.de")
        self._add_employee("Erika", "Musterfrau", "erika@example.de")
        self._add_employee("Otto", "Normal", "otto@example.de", active=False)
        self.session.add(
            TimesheetUpload(
                employee_id=max_employee.id,
                month=3,
                year=2025,
                filename="zeitnachweis_max.pdf",
                filepath="/tmp/zeitnachweis_max.pdf",
                uploaded_at=datetime(2025, 3, 20, 9, 0, tzinfo=timezone.utc),
            )
        )
        self.session.commit()

        response = self.client.get("/api/employees/status", params={"month": 3, "year": 2025})

        self.assertEqual(response.status_code, 200)
        rows = {item["email"]: item for item in response.json()}
        self.assertEqual(set(rows), {"max@example.de", "erika@example.de"})
        self.assertTrue(rows["max@example.de"]["uploaded"])
        self.assertEqual(rows["max@example.de"]["filename"], "zeitnachweis_max.pdf")
        self.assertFalse(rows["erika@example.de"]["uploaded"])
        self.assertIsNone(rows["erika@example.de"]["upload_date"])

        response = self.client.get("/api/employees/status", params={"month": 4, "year": 2025})
        self.assertFalse(any(item["uploaded"] for item in response.json()))

    def test_status_rejects_invalid_month(self) -> None:
        response = self.client.get("/api/employees/status", params={"month": 13, "year": 2025})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_PERIOD")

    def test_delete_deactivates_employee_and_keeps_uploads(self) -> None:
        employee = self._add_employee("Max", "Mustermann", "max@example.de")
        self.session.add(
            TimesheetUpload(
                employee_id=employee.id,
                month=3,
                year=2025,
                filename="zeitnachweis_max.pdf",
                filepath="/tmp/zeitnachweis_max.pdf",
            )
        )
        self.session.commit()

        response = self.client.delete(f"/api/employees/{employee.id}")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Mitarbeiter erfolgreich deaktiviert.")
        self.session.refresh(employee)
        self.assertFalse(employee.is_active)
        self.assertEqual(len(employee.uploads), 1)

        status_rows = self.client.get("/api/employees/status", params={"month": 3, "year": 2025}).json()
        self.assertEqual(status_rows, [])

    def test_delete_unknown_employee_returns_404(self) -> None:
        response = self.client.delete("/api/employees/999")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_NOT_FOUND")

    def test_patch_active_reactivates_employee(self) -> None:
        employee = self._add_employee("Otto", "Normal", "otto@example.de", active=False)

        response = self.client.patch(f"/api/employees/{employee.id}/active", json={"is_active": True})

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["active"])


if __name__ == "__main__":
    unittest.main()
