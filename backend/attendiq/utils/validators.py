"""Validation utilities for the application."""
from typing import Any, Dict, List

class Validator:
    """Validation helper class."""

    @staticmethod
    def validate_required_fields(data: Dict, required_fields: List[str]) -> Dict[str, Any]:
        """Validate required fields in data."""
        errors = []

        for field in required_fields:
            if field not in data or data[field] is None or data[field] == '':
                errors.append(f"{field} is required")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def validate_coordinates(latitude: Any, longitude: Any) -> Dict[str, Any]:
        """Validate a latitude/longitude pair."""
        errors = []

        try:
            lat = float(latitude)
            lng = float(longitude)
        except (TypeError, ValueError):
            return {"is_valid": False, "errors": ["Coordinates must be numbers"]}

        if not -90 <= lat <= 90:
            errors.append("Latitude must be between -90 and 90")
        if not -180 <= lng <= 180:
            errors.append("Longitude must be between -180 and 180")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def validate_int_range(value: Any, name: str, minimum: int, maximum: int) -> Dict[str, Any]:
        """Validate an integer within inclusive bounds."""
        errors = []

        if isinstance(value, bool):
            errors.append(f"{name} must be an integer")
        else:
            try:
                number = int(value)
                if number != float(value):
                    errors.append(f"{name} must be an integer")
                elif not minimum <= number <= maximum:
                    errors.append(f"{name} must be between {minimum} and {maximum}")
            except (TypeError, ValueError):
                errors.append(f"{name} must be an integer")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def is_true(value: Any) -> bool:
        """Strict boolean check for client-supplied flags."""
        return value is True
