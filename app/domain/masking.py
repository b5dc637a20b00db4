# app/domain/masking.py
import re
from typing import Any

SENSITIVE_KEYS = {"token", "credential", "session_token", "session_id", "sessionToken", "sessionId", "password", "secret"}
NIP_PATTERN = re.compile(r"^\d{10}$")


def anonymize_for_logs(data: Any) -> Any:
    """
    Oculta tokens, identificadores de sesión y NIPs antes de escribirlos en los logs.
    Recorre diccionarios y listas de forma recursiva.
    """
    if isinstance(data, str):
        # Cadenas largas: probablemente tokens o hashes
        if len(data) > 20:
            return f"{data[:8]}***{data[-4:]}"
        if NIP_PATTERN.match(data):
            return f"{data[:3]}***{data[-2:]}"
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS:
                if isinstance(value, str) and len(value) > 8:
                    result[key] = f"{value[:4]}***{value[-4:]}"
                else:
                    result[key] = "[HIDDEN]"
            else:
                result[key] = anonymize_for_logs(value)
        return result

    if isinstance(data, (list, tuple)):
        return [anonymize_for_logs(item) for item in data]

    return data
