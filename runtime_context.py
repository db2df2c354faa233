"""
Contexto compartido de ejecución para correlación de requests y llamadas a Siigo.
"""
import contextvars

# Correlaciona todas las llamadas a Siigo del request HTTP actual.
current_request_id = contextvars.ContextVar("current_request_id", default="-")
