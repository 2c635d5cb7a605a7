"""Utilidades para retry con backoff exponencial"""
import asyncio
from typing import Callable, Any, Type, Tuple


def backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0
) -> float:
    """
    Delay antes del reintento número `attempt` (0 = primer reintento)

    initial_delay * exponential_base ** attempt, acotado por max_delay.
    """
    if attempt < 0:
        raise ValueError("attempt debe ser >= 0")
    return min(initial_delay * (exponential_base ** attempt), max_delay)


async def retry_with_backoff(
    func: Callable,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,)
) -> Any:
    """
    Ejecutar función con retry y backoff exponencial

    Args:
        func: Función a ejecutar (async o sync)
        max_retries: Número máximo de reintentos
        initial_delay: Delay inicial en segundos
        max_delay: Delay máximo en segundos
        exponential_base: Base para cálculo exponencial
        exceptions: Excepciones que deben trigger retry

    Returns:
        Resultado de la función
    """
    for attempt in range(max_retries + 1):
        try:
            if asyncio.iscoroutinefunction(func):
                return await func()
            return func()
        except exceptions:
            if attempt == max_retries:
                raise
            await asyncio.sleep(backoff_delay(attempt, initial_delay, max_delay, exponential_base))
