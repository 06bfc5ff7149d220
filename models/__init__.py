"""Pydantic models for relay wire messages and HTTP responses."""

from models.messages import *
from models.sessions import *
