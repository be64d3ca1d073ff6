# secure_client/core/service_base.py
"""
Base service class for services that own a network client.

Services inheriting from BaseService share:
- Lazy initialization
- Error handling on startup and shutdown
- Health checks
- Resource cleanup
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, TypeVar, Generic
import logging
from contextlib import asynccontextmanager
from secure_client.core.exceptions import ServiceError, ConfigurationError

# Type variable for service configuration
ConfigType = TypeVar('ConfigType')


class BaseService(ABC, Generic[ConfigType]):
    """
    Abstract base class for client-owning services.

    Provides:
    - Lazy initialization pattern
    - Consistent error handling
    - Health check interface
    - Resource management
    """

    def __init__(
        self,
        config: Optional[ConfigType] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            config: Service-specific configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._initialized = False
        self._client = None

        self.service_name = self.__class__.__name__
        self.service_version = "1.0"

    @abstractmethod
    async def _initialize_client(self) -> Any:
        """
        Create the underlying client.

        Raises:
            ConfigurationError: If configuration is invalid
            ServiceError: If initialization fails
        """
        pass

    async def initialize(self) -> None:
        """
        Initialize the service (lazy loading pattern).

        This method is idempotent - multiple calls are safe.
        """
        if self._initialized:
            self.logger.debug(f"{self.service_name} already initialized")
            return

        try:
            self.logger.info(f"Initializing {self.service_name}...")

            self._validate_config()
            self._client = await self._initialize_client()
            self._initialized = True

            self.logger.info(f"{self.service_name} initialized successfully")

        except ConfigurationError:
            raise
        except Exception as e:
            error_msg = f"Failed to initialize {self.service_name}"
            self.logger.error(error_msg, exc_info=True)
            raise ServiceError(
                service_name=self.service_name,
                operation="initialize",
                message=error_msg,
                details={'original_error': str(e), 'error_type': type(e).__name__}
            ) from e

    def _validate_config(self) -> None:
        """
        Validate service configuration. Override for service-specific checks.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self.config is None:
            self.logger.debug(f"No configuration provided for {self.service_name}")

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the service.

        Returns:
            Dict containing:
            - healthy: bool indicating if service is healthy
            - status: string status message
            - details: optional additional information
        """
        pass

    async def ensure_initialized(self) -> None:
        """Call at the start of any public method that needs the client."""
        if not self._initialized:
            await self.initialize()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def client(self) -> Any:
        """
        The underlying client.

        Raises:
            ServiceError: If service is not initialized
        """
        if not self._initialized or self._client is None:
            raise ServiceError(
                service_name=self.service_name,
                message=f"{self.service_name} is not initialized. Call initialize() first."
            )
        return self._client

    async def shutdown(self) -> None:
        """Gracefully shutdown the service and cleanup resources."""
        if not self._initialized:
            return

        try:
            self.logger.info(f"Shutting down {self.service_name}...")
            await self._cleanup()
            self.logger.info(f"{self.service_name} shut down successfully")
        except Exception:
            self.logger.error(f"Error during {self.service_name} shutdown", exc_info=True)
            # Don't raise - cleanup has to be as graceful as possible
        finally:
            self._client = None
            self._initialized = False

    async def _cleanup(self) -> None:
        """Service-specific cleanup logic."""
        pass

    @asynccontextmanager
    async def session(self):
        """
        Bind the service lifetime to a block.

        Usage:
            async with pipeline.session():
                await pipeline.get("/bookings")
        """
        await self.ensure_initialized()
        try:
            yield self
        except Exception:
            self.logger.error(f"Session failed in {self.service_name}", exc_info=True)
            raise
        finally:
            await self.shutdown()

    def get_metrics(self) -> Dict[str, Any]:
        """
        Service metrics for monitoring. Override to add service-specific values.
        """
        return {
            "service_name": self.service_name,
            "service_version": self.service_version,
            "initialized": self._initialized,
        }

    async def test_connection(self) -> bool:
        """True if the health check reports healthy"""
        try:
            health = await self.health_check()
            return health.get("healthy", False)
        except Exception:
            return False
