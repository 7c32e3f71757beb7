"""
Chat relay service - the host-facing plugin component.

This module handles the lifecycle around streaming sessions:
- Loading and saving the user's API key and endpoint
- Keeping one shared HTTP transport ready and replacing it on config change
- Building the conversation for each incoming message from host history
- Spawning one background streaming session per message
"""

from __future__ import annotations

import concurrent.futures
from typing import Any

from pydantic import BaseModel, ConfigDict

from deepseek_relay.config import Configuration, UserConfigStore
from deepseek_relay.history.conversation_utils import build_conversation
from deepseek_relay.llm.client import TransportClient
from deepseek_relay.llm.exceptions import ConfigError, NotInitializedError
from deepseek_relay.llm.streaming.models import SessionState
from deepseek_relay.llm.streaming.session import StreamingSession
from deepseek_relay.llm.streaming.sink import HostContext, StreamSink
from deepseek_relay.logging_utils import ContextualLogger
from deepseek_relay.runtime import WorkerRuntime

ACKNOWLEDGEMENT = "Processing your request..."


class ChatRelayService:
    """
    Relay orchestrator
    1. Takes the user's message from the host
    2. Builds the conversation from completed history turns
    3. Streams the model's answer into the host's sink in the background
    4. Returns an acknowledgement immediately
    """

    class ChatRelayServiceConfig(BaseModel):
        model_config = ConfigDict(arbitrary_types_allowed=True)

        configuration: Configuration
        sink: Any  # StreamSink
        user_store: UserConfigStore | None = None
        http_transport: Any | None = None  # httpx.AsyncBaseTransport
        runtime: WorkerRuntime | None = None

    def __init__(
        self,
        service_config: ChatRelayService.ChatRelayServiceConfig,
    ):
        self.configuration = service_config.configuration
        self.sink: StreamSink = service_config.sink

        llm_config = self.configuration.get_llm_config()
        self.model: str = llm_config["model"]
        self.api_url: str = llm_config["default_api_url"]
        self.api_key: str = ""

        self.streaming_conf = self.configuration.get_streaming_config()
        self.http_conf = self.configuration.get_http_client_config()
        self.runtime_conf = self.configuration.get_runtime_config()

        self.user_store = service_config.user_store or UserConfigStore(
            self.configuration.get_user_config_path()
        )
        self._http_transport = service_config.http_transport
        self.transport: TransportClient | None = None
        self.runtime: WorkerRuntime | None = service_config.runtime

        self._log = ContextualLogger({"component": "chat_relay"})

    # ------------------------------------------------------------------ #
    # Configuration                                                      #
    # ------------------------------------------------------------------ #

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key.strip() and self.api_url.strip())

    def status_text(self) -> str:
        if self.is_configured:
            return "Status: configured, ready to chat"
        return "Status: please set the API key and URL"

    def load_user_config(self) -> None:
        """Apply persisted settings, falling back to the environment for the key."""
        user_config = self.user_store.load()

        if user_config.api_key:
            self.api_key = user_config.api_key
            self._log.info("Loaded API key from config")
        elif env_key := self.configuration.llm_api_key:
            self.api_key = env_key
            self._log.info("Loaded API key from environment")

        if user_config.api_url:
            self.api_url = user_config.api_url
            self._log.info("Loaded API URL from config", api_url=self.api_url)

    def update_config(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
    ) -> concurrent.futures.Future[None] | None:
        """
        Save edited settings and (re)initialize the HTTP client.

        Returns:
            The initialization future when the runtime is running, else None
        """
        if api_key is not None:
            self.api_key = api_key
        if api_url is not None:
            self.api_url = api_url

        self.user_store.save(self.api_key, self.api_url)

        if self.transport is None:
            self.transport = TransportClient(
                self.http_conf, transport=self._http_transport
            )

        if self.runtime is None or not self.runtime.is_running:
            self._log.warning("Runtime not running, HTTP client not initialized")
            return None

        return self.runtime.submit(
            self.transport.initialize(), description="initialize_http_client"
        )

    # ------------------------------------------------------------------ #
    # Host lifecycle                                                     #
    # ------------------------------------------------------------------ #

    def _log_lifecycle(self, event: str, context: HostContext) -> None:
        metadata = context.metadata
        self._log.info(
            event,
            plugin_id=metadata.id,
            plugin_name=metadata.name,
            version=metadata.version,
            instance_id=metadata.instance_id or "None",
        )

    def on_mount(self, context: HostContext) -> None:
        self._log_lifecycle("Plugin mount successfully", context)
        self.load_user_config()

        if self.runtime is None:
            self.runtime = WorkerRuntime(
                shutdown_grace=self.runtime_conf["shutdown_grace"]
            )
        if not self.runtime.is_running:
            try:
                self.runtime.start()
            except RuntimeError as e:
                self._log.warning("Failed to initialize worker runtime", error=str(e))
                return

        self.update_config()

    def on_connect(self, context: HostContext) -> None:
        self._log_lifecycle("Plugin connect successfully", context)
        if not self.is_configured:
            self._log.warning("API Key not configured, please set in plugin settings")
            raise ConfigError("API Key not configured")

    def on_disconnect(self, context: HostContext) -> None:
        self._log_lifecycle("Plugin disconnect successfully", context)

    def on_dispose(self, context: HostContext) -> None:
        self._log_lifecycle("Plugin disposed successfully", context)

        if self.runtime is None:
            self._log.warning("Worker runtime not initialized, cannot shutdown")
            return

        if self.runtime.is_running and self.runtime.owners == 1 and self.transport:
            try:
                self.runtime.run(
                    self.transport.close(), timeout=self.runtime_conf["shutdown_grace"]
                )
            except (concurrent.futures.TimeoutError, RuntimeError) as e:
                self._log.warning("Failed to close HTTP client", error=str(e))

        self.runtime.shutdown()

    # ------------------------------------------------------------------ #
    # Messages                                                           #
    # ------------------------------------------------------------------ #

    def handle_message(self, message: str, context: HostContext) -> str:
        """Start streaming an answer and acknowledge immediately.

        Raises:
            ConfigError: If no API key is set
            RuntimeError: If the worker runtime is not running
        """
        self._log_lifecycle("Plugin receive message", context)
        self.submit_message(message, context)
        return ACKNOWLEDGEMENT

    def submit_message(
        self, message: str, context: HostContext
    ) -> concurrent.futures.Future[SessionState]:
        """Schedule one streaming session and return its future."""
        if not self.api_key.strip():
            raise ConfigError("Please set the API key in the plugin settings first")
        if self.runtime is None or not self.runtime.is_running:
            raise RuntimeError("Runtime not initialized")

        # Sessions use the settings current at submission time
        return self.runtime.submit(
            self.send_streaming_request(
                message, context, api_key=self.api_key, api_url=self.api_url
            ),
            description="streaming_request",
        )

    async def send_streaming_request(
        self,
        message: str,
        context: HostContext,
        *,
        api_key: str,
        api_url: str,
    ) -> SessionState:
        """Run one streaming session for ``message``."""
        if self.transport is None:
            raise NotInitializedError("API client not initialized")

        messages = build_conversation(
            context.get_history(),
            message,
            history_limit=self.streaming_conf["history_limit"],
        )

        session = StreamingSession(
            self.transport,
            self.sink,
            context,
            api_key=api_key,
            api_url=api_url,
            model=self.model,
            request_timeout=self.streaming_conf["request_timeout"],
            inactivity_timeout=self.streaming_conf["inactivity_timeout"],
        )
        return await session.run(messages)
