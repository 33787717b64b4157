import tempfile
import unittest
from collections.abc import Generator
from datetime import date
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from zeitnachweis.db import Base, get_db
from zeitnachweis.main import app
from zeitnachweis.models import Employee, TimesheetUpload
from zeitnachweis.settings import Settings

PDF_BYTES = b"%PDF-1.4\n% zeitnachweis\n"


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


class UploadEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.upload_dir = Path(self._tmp.name)
        self.session = _make_session()
        self.employee = Employee(firstname="Max", lastname="Mustermann", email="max@example.de")
        self.session.add(self.employee)
        self.session.commit()
        app.dependency_overrides[get_db] = override_get_db(self.session)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.session.close()
        self._tmp.cleanup()

    def _settings(self, **overrides) -> Settings:  # type: ignore[no-untyped-def]
        return Settings(upload_dir=str(self.upload_dir), **overrides)

    def _post_file(self, *, filename: str = "zeit.pdf", content_type: str = "application/pdf", **data):  # type: ignore[no-untyped-def]
        form = {"employeeId": str(self.employee.id), "month": "3", "year": "2025"}
        form.update(data)
        return self.client.post(
            "/api/upload",
            data=form,
            files={"file": (filename, PDF_BYTES, content_type)},
        )

    def test_probe_with_json_body_reports_window(self) -> None:
        with (
            patch("zeitnachweis.routers.public.get_settings", return_value=self._settings(upload_window_working_days=1)),
            patch("zeitnachweis.routers.public.local_today", return_value=date(2025, 3, 3)),
        ):
            response = self.client.post("/api/upload", json={"test": True})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["allowed"])
        self.assertEqual(body["status"], "allowed")
        self.assertEqual(body["window_working_days"], 1)
        self.assertEqual(body["closes_on"], "2025-03-03")

    def test_probe_with_form_field_reports_closed_window(self) -> None:
        with (
            patch("zeitnachweis.routers.public.get_settings", return_value=self._settings(upload_window_working_days=1)),
            patch("zeitnachweis.routers.public.local_today", return_value=date(2025, 3, 4)),
        ):
            response = self.client.post("/api/upload", data={"test": "true"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "closed")
        self.assertFalse(response.json()["allowed"])

    def test_json_body_without_probe_is_missing_file(self) -> None:
        response = self.client.post("/api/upload", json={"employeeId": self.employee.id})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "FILE_MISSING")

    def test_missing_file_and_missing_employee_id(self) -> None:
        response = self.client.post("/api/upload", data={"employeeId": str(self.employee.id)})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "FILE_MISSING")

        response = self.client.post("/api/upload", files={"file": ("zeit.pdf", PDF_BYTES, "application/pdf")})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_ID_MISSING")

    def test_upload_success_stores_row_and_queues_notice(self) -> None:
        with (
            patch("zeitnachweis.routers.public.get_settings", return_value=self._settings()),
            patch("zeitnachweis.routers.public.send_upload_notice") as notice,
        ):
            response = self._post_file()

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["message"], "Zeitnachweis erfolgreich hochgeladen!")
        self.assertEqual((body["month"], body["year"]), (3, 2025))
        self.assertFalse(body["replaced"])
        self.assertTrue((self.upload_dir / body["filename"]).is_file())

        row = self.session.scalar(select(TimesheetUpload))
        self.assertEqual(row.employee_id, self.employee.id)
        self.assertEqual(row.original_filename, "zeit.pdf")

        notice.assert_called_once()
        kwargs = notice.call_args.kwargs
        self.assertEqual(kwargs["employee_email"], "max@example.de")
        self.assertEqual(kwargs["filename"], body["filename"])

    def test_upload_accepts_legacy_field_name(self) -> None:
        with (
            patch("zeitnachweis.routers.public.get_settings", return_value=self._settings()),
            patch("zeitnachweis.routers.public.send_upload_notice"),
        ):
            response = self.client.post(
                "/api/upload",
                data={"employeeId": str(self.employee.id)},
                files={"zeitnachweis": ("scan.png", b"\x89PNG\r\n", "image/png")},
            )

        self.assertEqual(response.status_code, 200)

    def test_second_upload_reports_replacement(self) -> None:
        with (
            patch("zeitnachweis.routers.public.get_settings", return_value=self._settings()),
            patch("zeitnachweis.routers.public.send_upload_notice"),
        ):
            self._post_file()
            response = self._post_file(filename="korrektur.pdf")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["replaced"])
        self.assertEqual(len(self.session.scalars(select(TimesheetUpload)).all()), 1)

    def test_closed_window_returns_403(self) -> None:
        with (
            patch("zeitnachweis.routers.public.get_settings", return_value=self._settings(upload_window_working_days=1)),
            patch("zeitnachweis.services.uploads.local_today", return_value=date(2025, 3, 20)),
            patch("zeitnachweis.routers.public.send_upload_notice") as notice,
        ):
            response = self._post_file()

        self.assertEqual(response.status_code, 403)
        body = response.json()
        self.assertEqual(body["error"]["code"], "UPLOAD_WINDOW_CLOSED")
        self.assertEqual(body["error"]["details"]["closes_on"], "2025-03-03")
        notice.assert_not_called()

    def test_unknown_employee_returns_404(self) -> None:
        with patch("zeitnachweis.routers.public.get_settings", return_value=self._settings()):
            response = self._post_file(employeeId="999")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_NOT_FOUND")

    def test_wrong_file_type_returns_400(self) -> None:
        with patch("zeitnachweis.routers.public.get_settings", return_value=self._settings()):
            response = self._post_file(filename="zeit.docx", content_type="application/msword")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "FILE_TYPE_NOT_ALLOWED")
        self.assertEqual(list(self.upload_dir.iterdir()), [])

    def test_non_numeric_employee_id_returns_400(self) -> None:
        with patch("zeitnachweis.routers.public.get_settings", return_value=self._settings()):
            response = self._post_file(employeeId="abc")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "INVALID_FIELD")


if __name__ == "__main__":
    unittest.main()
