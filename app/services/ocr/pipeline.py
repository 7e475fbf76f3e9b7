"""
OCR extraction pipeline: primary provider, then fallbacks in order, then the stub.

Providers are tried strictly one after another. Each call runs in a worker thread
behind the provider's circuit breaker and a timeout; a raised exception, a timeout
or an open breaker counts the same as is_available() == False.
extract() never raises, except for cancellation of the caller.
"""
import asyncio
import logging
import time

import pybreaker

from app.schemas.payments import OCROptions, OCRResult
from app.services.circuit_breaker import get_circuit_breaker
from app.services.ocr.base import OCRProvider
from app.services.ocr.extraction import DEFAULT_AMOUNT_PATTERNS, DEFAULT_TX_ID_PATTERNS
from app.services.ocr.factory import OCRProviderFactory
from app.services.ocr.providers.stub import StubOCRProvider
from app.utils.metrics import ocr_pipeline_duration_seconds, ocr_provider_requests_total

logger = logging.getLogger("ocr.pipeline")


class OCRPipeline:
    def __init__(
        self,
        primary: OCRProvider | None,
        fallbacks: list[OCRProvider] | None = None,
        *,
        confidence_threshold: float = 0.7,
        provider_timeout: float = 30.0,
        tx_id_patterns: tuple[str, ...] | list[str] = DEFAULT_TX_ID_PATTERNS,
        amount_patterns: tuple[str, ...] | list[str] = DEFAULT_AMOUNT_PATTERNS,
        stub: OCRProvider | None = None,
        use_circuit_breaker: bool = True,
    ) -> None:
        self.providers: list[OCRProvider] = [p for p in [primary, *(fallbacks or [])] if p is not None]
        self.stub = stub or StubOCRProvider()
        self.confidence_threshold = confidence_threshold
        self.provider_timeout = provider_timeout
        self.tx_id_patterns = list(tx_id_patterns)
        self.amount_patterns = list(amount_patterns)
        self.use_circuit_breaker = use_circuit_breaker

    @classmethod
    def from_settings(cls, settings) -> "OCRPipeline":
        primary, fallbacks = OCRProviderFactory.create_chain_from_settings(settings)
        return cls(
            primary,
            fallbacks,
            confidence_threshold=settings.ocr_confidence_threshold,
            provider_timeout=settings.ocr_provider_timeout_seconds,
        )

    async def extract(self, image: bytes, options: OCROptions | None = None) -> OCRResult:
        started = time.perf_counter()
        opts = self._effective_options(options or OCROptions())
        threshold = opts.confidence_threshold

        try:
            if not image:
                return self._finish(self._stub_result(opts, error="empty image"), started)

            for provider in self.providers:
                result = await self._try_provider(provider, image, opts)
                if result is None:
                    continue
                if result.confidence_score >= threshold:
                    ocr_provider_requests_total.labels(provider=provider.name, status="accepted").inc()
                    return self._finish(result, started)
                ocr_provider_requests_total.labels(provider=provider.name, status="below_threshold").inc()
                logger.info(
                    "ocr_provider_below_threshold",
                    extra={
                        "provider": provider.name,
                        "confidence": result.confidence_score,
                        "threshold": threshold,
                    },
                )

            return self._finish(self._stub_result(opts), started)
        except Exception as e:
            logger.exception("ocr_pipeline_failed")
            return self._finish(
                OCRResult(confidence_score=0.0, raw_text="", error=str(e) or type(e).__name__),
                started,
            )

    def _effective_options(self, options: OCROptions) -> OCROptions:
        return options.model_copy(
            update={
                "confidence_threshold": (
                    options.confidence_threshold
                    if options.confidence_threshold is not None
                    else self.confidence_threshold
                ),
                "tx_id_patterns": options.tx_id_patterns or self.tx_id_patterns,
                "amount_patterns": options.amount_patterns or self.amount_patterns,
            }
        )

    async def _try_provider(self, provider: OCRProvider, image: bytes, options: OCROptions) -> OCRResult | None:
        """Run one provider; None means "treat as unavailable"."""
        try:
            available = provider.is_available()
        except Exception:
            logger.warning("ocr_provider_availability_check_failed", extra={"provider": provider.name}, exc_info=True)
            available = False
        if not available:
            ocr_provider_requests_total.labels(provider=provider.name, status="unavailable").inc()
            return None

        if self.use_circuit_breaker:
            breaker = get_circuit_breaker(f"ocr_{provider.name}")
            call = asyncio.to_thread(breaker.call, provider.process_image, image, options)
        else:
            call = asyncio.to_thread(provider.process_image, image, options)

        try:
            return await asyncio.wait_for(call, timeout=self.provider_timeout)
        except pybreaker.CircuitBreakerError:
            logger.warning("ocr_provider_circuit_open", extra={"provider": provider.name})
        except asyncio.TimeoutError:
            logger.warning(
                "ocr_provider_timeout",
                extra={"provider": provider.name, "latency_ms": int(self.provider_timeout * 1000)},
            )
        except Exception as e:
            logger.warning(
                "ocr_provider_failed",
                extra={"provider": provider.name, "error": f"{type(e).__name__}: {e}"},
            )
        ocr_provider_requests_total.labels(provider=provider.name, status="error").inc()
        return None

    def _stub_result(self, options: OCROptions, error: str | None = None) -> OCRResult:
        result = self.stub.process_image(b"", options)
        if error:
            result = result.model_copy(update={"error": error})
        return result

    def _finish(self, result: OCRResult, started: float) -> OCRResult:
        elapsed = time.perf_counter() - started
        ocr_pipeline_duration_seconds.labels(provider=result.provider or "none").observe(elapsed)
        return result.model_copy(update={"processing_time_ms": int(elapsed * 1000)})
