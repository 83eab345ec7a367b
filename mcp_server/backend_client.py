"""
Booking API calls made by the MCP tools, with the backend-api registration's token.
"""
import threading

from oauth_kit.downstream import ServiceClient


class BackendClient(ServiceClient):
    def __init__(self, base_url: str, manager, registration_id: str, **kwargs):
        super().__init__("booking-api", base_url, manager, registration_id, **kwargs)

    def list_customers(self, cancelled: threading.Event | None = None) -> list:
        return self.get_json("/customers", cancelled=cancelled)

    def list_bookings(self, cancelled: threading.Event | None = None) -> list:
        return self.get_json("/bookings", cancelled=cancelled)

    def create_booking(self, booking: dict, cancelled: threading.Event | None = None) -> dict:
        return self.post_json("/bookings", booking, cancelled=cancelled)
