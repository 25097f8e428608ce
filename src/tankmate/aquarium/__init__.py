"""Aquarium snapshot types read by the chat engine."""

from .models import Aquarium, Equipment, Fish, Plant, WaterParameters

__all__ = ["Aquarium", "Equipment", "Fish", "Plant", "WaterParameters"]
