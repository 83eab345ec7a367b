"""
Booking API routes. Only enough surface for the security policy to guard; the booking
domain itself lives elsewhere, so reads return canned data and updates are not implemented.
"""
from fastapi import APIRouter, Depends, HTTPException

from oauth_kit.filter_chain import current_authentication
from oauth_kit.validator import ValidatedClaims

router = APIRouter(tags=["booking-api"])

_CUSTOMERS = [
    {"id": "c-1", "name": "Ada Lovelace", "email": "ada@example.com"},
    {"id": "c-2", "name": "Alan Turing", "email": "alan@example.com"},
]
_TABLES = [
    {"id": "t-1", "name": "Window 1", "seats": 2},
    {"id": "t-2", "name": "Garden 4", "seats": 6},
]


@router.get("/customers")
def list_customers():
    return _CUSTOMERS


@router.get("/customers/{customer_id}")
def get_customer(customer_id: str):
    for customer in _CUSTOMERS:
        if customer["id"] == customer_id:
            return customer
    raise HTTPException(status_code=404, detail="Customer not found")


@router.get("/bookings")
def list_bookings():
    return []


@router.post("/bookings", status_code=201)
def create_booking(booking: dict, authentication: ValidatedClaims = Depends(current_authentication)):
    """Echo the booking back with the caller recorded; nothing is persisted."""
    return {**booking, "id": "b-new", "createdBy": authentication.subject}


@router.put("/bookings/{booking_id}")
def update_booking(booking_id: str):
    raise HTTPException(status_code=501, detail="Not implemented")


@router.delete("/bookings/{booking_id}")
def delete_booking(booking_id: str):
    raise HTTPException(status_code=501, detail="Not implemented")


@router.get("/tables")
def list_tables():
    return _TABLES
