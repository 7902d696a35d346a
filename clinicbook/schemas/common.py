from typing import Any, Dict

def success_response(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    """Wrap a payload in the standard response envelope."""
    return {"success": True, "data": data, "message": message}

def error_response(error: Dict[str, Any], message: str) -> Dict[str, Any]:
    return {"success": False, "error": error, "message": message}
