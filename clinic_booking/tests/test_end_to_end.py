import os
import random
import string
from datetime import datetime, timedelta, timezone

import pytest
import requests
from dateutil.parser import parse

from clinic_booking.app.auth import create_access_token

BASE_URL = os.getenv("CLINIC_BOOKING_E2E_URL")

pytestmark = pytest.mark.skipif(not BASE_URL, reason="CLINIC_BOOKING_E2E_URL is not set")


@pytest.fixture(scope="module")
def base_url():
    return BASE_URL.rstrip("/")


def random_ref(role):
    return f"{role}-{''.join(random.choices(string.ascii_lowercase + string.digits, k=8))}"


def headers_for(ref, role):
    return {"Authorization": f"Bearer {create_access_token({'sub': ref, 'role': role})}"}


def test_end_to_end(base_url):
    doctor_ref = random_ref("doctor")
    patient_ref = random_ref("patient")
    doctor = headers_for(doctor_ref, "doctor")
    patient = headers_for(patient_ref, "patient")
    day = (datetime.now(timezone.utc).date() + timedelta(days=3)).isoformat()

    response = requests.post(f"{base_url}/availability/me/day", json={
        "date": day, "start_time": "09:00", "end_time": "12:00", "duration_minutes": 15, "session_capacity": 5,
    }, headers=doctor)
    assert response.status_code == 200, f"Setting availability failed: {response.text}"

    response = requests.get(f"{base_url}/doctors/{doctor_ref}/slots", params={"date": day})
    assert response.status_code == 200, f"Get slots failed: {response.text}"
    slots = response.json()["slots"]
    assert len(slots) == 12

    response = requests.post(f"{base_url}/appointments", json={
        "doctor_ref": doctor_ref, "date": day, "start_time": slots[0]["start_time"], "patient_name": "E2E Patient",
    }, headers=patient)
    assert response.status_code == 201, f"Booking failed: {response.text}"
    appointment = response.json()["appointment"]
    assert appointment["queue_no"] == 1
    assert parse(appointment["created_at"]).date() <= datetime.now(timezone.utc).date()

    response = requests.post(f"{base_url}/appointments", json={
        "doctor_ref": doctor_ref, "date": day, "start_time": slots[0]["start_time"],
    }, headers=headers_for(random_ref("patient"), "patient"))
    assert response.status_code == 409, f"Double booking was accepted: {response.text}"

    response = requests.post(f"{base_url}/appointments/{appointment['id']}/cancel", headers=patient)
    assert response.status_code == 200, f"Cancel failed: {response.text}"
    assert response.json()["appointment"]["status"] == "Cancelled"

    response = requests.get(f"{base_url}/doctors/{doctor_ref}/slots", params={"date": day})
    assert slots[0]["start_time"] in [s["start_time"] for s in response.json()["slots"]]
