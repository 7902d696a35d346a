"""
Clinic Booking Core

FastAPI service that keeps physician slot inventory, books appointments
against it, tracks their status and payment, handles refund requests and
links treatment plans to appointments.
"""

__version__ = "1.0.0"
