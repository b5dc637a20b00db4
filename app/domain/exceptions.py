# app/domain/exceptions.py


class KSeFError(Exception):
    """Error base de la integración con KSeF."""


class ProtocolError(KSeFError):
    """La API respondió con un estado no exitoso o una respuesta mal formada."""


class RegistryTimeoutError(ProtocolError):
    """Una llamada de red superó su tiempo máximo."""


class StateError(KSeFError):
    """Se intentó una llamada del protocolo fuera de orden (p. ej. sin sesión activa)."""


class DocumentParseError(KSeFError):
    """No se pudo interpretar un documento XML individual."""


class PackageParseError(DocumentParseError):
    """El paquete descargado no es un archivo ZIP válido."""


class PersistenceError(KSeFError):
    """Fallo al guardar o consultar datos en la base de datos."""


class ConfigNotFoundError(KSeFError):
    pass


class FetchInProgressError(KSeFError):
    """Ya existe una descarga en curso para la misma configuración."""


class ValidationError(KSeFError):
    pass


class ConfigurationError(KSeFError):
    """Falta configuración del entorno (clave de cifrado, URL, etc.)."""
