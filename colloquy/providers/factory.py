"""Fan-out of context providers with isolation, a bounded join, and cancellation."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from colloquy.context.parts import Part, TextPart
from colloquy.providers.base import ContextPosition, ContextProvider

if TYPE_CHECKING:
    from colloquy.chat import Chat

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


class ContentFactory:
    """Runs the enabled providers for a position and collects their parts.

    A provider that raises is reported inline as ``Error in <name>: ...``
    and does not affect its siblings.  ``produce`` stops waiting when the
    timeout expires or ``interrupt`` is set; unfinished providers are
    cancelled and reported as skipped.
    """

    def __init__(
        self,
        providers: Iterable[ContextProvider] = (),
        *,
        parallel: bool = True,
        timeout: float = 10.0,
        max_workers: int = 8,
    ):
        self.providers: List[ContextProvider] = list(providers)
        self.parallel = parallel
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="colloquy-provider")

    def get(self, provider_id: str) -> Optional[ContextProvider]:
        for provider in self.providers:
            if provider.provider_id == provider_id:
                return provider
        return None

    def set_enabled(self, provider_ids: Iterable[str], enabled: bool) -> List[str]:
        """Enable or disable providers; returns the ids that were found."""
        changed = []
        for provider_id in provider_ids:
            provider = self.get(provider_id)
            if provider is not None:
                provider.enabled = enabled
                changed.append(provider_id)
        return changed

    @staticmethod
    def _header(provider: ContextProvider) -> TextPart:
        return TextPart(text=f"--- {provider.name} ({provider.provider_id}) ---")

    @staticmethod
    def _error(provider: ContextProvider, error: BaseException) -> TextPart:
        return TextPart(text=f"Error in {provider.name}: {error}")

    def _run_one(self, provider: ContextProvider, chat: "Chat") -> List[Part]:
        return list(provider.produce(chat))

    def produce(
        self,
        position: ContextPosition,
        chat: "Chat",
        interrupt: Optional[threading.Event] = None,
    ) -> List[Part]:
        selected = [p for p in self.providers if p.position == position]
        enabled = [p for p in selected if p.enabled]
        disabled = [p for p in selected if not p.enabled]

        results: Dict[str, List[Part]] = {}
        if self.parallel and len(enabled) > 1:
            results = self._produce_parallel(enabled, chat, interrupt)
        else:
            for provider in enabled:
                if interrupt is not None and interrupt.is_set():
                    break
                try:
                    results[provider.provider_id] = self._run_one(provider, chat)
                except Exception as e:
                    logger.exception(f"Context provider {provider.provider_id} failed")
                    results[provider.provider_id] = [self._error(provider, e)]

        parts: List[Part] = []
        for provider in enabled:
            produced = results.get(provider.provider_id)
            if produced is None:
                parts.append(TextPart(text=f"{provider.name}: skipped (not ready in time)"))
                continue
            if produced:
                parts.append(self._header(provider))
                parts.extend(produced)
        if disabled:
            names = ", ".join(f"{p.name} ({p.provider_id})" for p in disabled)
            parts.append(TextPart(text=f"Disabled context providers: {names}"))
        return parts

    def _produce_parallel(
        self,
        providers: List[ContextProvider],
        chat: "Chat",
        interrupt: Optional[threading.Event],
    ) -> Dict[str, List[Part]]:
        futures: Dict[Future, ContextProvider] = {
            self._executor.submit(self._run_one, p, chat): p for p in providers
        }
        results: Dict[str, List[Part]] = {}
        deadline = time.monotonic() + self.timeout
        pending = set(futures)
        while pending:
            if interrupt is not None and interrupt.is_set():
                logger.info("Context provider fan-out interrupted")
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"{len(pending)} context provider(s) timed out")
                break
            done, pending = wait(pending, timeout=min(POLL_INTERVAL, remaining), return_when=FIRST_COMPLETED)
            for future in done:
                provider = futures[future]
                error = future.exception()
                if error is not None:
                    logger.error(f"Context provider {provider.provider_id} failed: {error}")
                    results[provider.provider_id] = [self._error(provider, error)]
                else:
                    results[provider.provider_id] = future.result()
        for future in pending:
            future.cancel()
        return results

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
