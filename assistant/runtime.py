from __future__ import annotations

import logging
import threading
from typing import Optional

from assistant.config import Settings
from assistant.db.session import init_db
from assistant.services.anonymizer import Anonymizer
from assistant.services.dedup_cache import WEIGHERS, DedupCache
from assistant.services.metrics import Metrics
from assistant.services.orchestrator import ANONYMIZE_MODES, Orchestrator
from assistant.services.provider import LLMProvider, get_provider
from assistant.services.session_store import SessionStore, SqlSessionStore

logger = logging.getLogger("assistant")


class Runtime:
   """
   Process-wide owner of the long-lived components.

   - Cache: built eagerly, sweeper started by start(), stopped by close()
   - Provider / store: built lazily on first use
   - Orchestrator: composed from the above once
   """

   def __init__(
      self,
      settings: Settings,
      *,
      provider: Optional[LLMProvider] = None,
      store: Optional[SessionStore] = None,
   ):
      self.settings = settings
      self.metrics = Metrics()

      weigher = WEIGHERS.get(settings.cache_weigher)
      if weigher is None:
         logger.warning("Unknown cache weigher %r, using count", settings.cache_weigher)
         weigher = WEIGHERS["count"]
      self.cache = DedupCache(
         max_weight=settings.cache_max_weight,
         ttl_s=settings.cache_ttl_s,
         weigher=weigher,
         metrics=self.metrics,
      )

      self.anonymize = settings.anonymize
      if self.anonymize not in ANONYMIZE_MODES:
         logger.warning("Unknown anonymize mode %r, using cloud", self.anonymize)
         self.anonymize = "cloud"
      self.anonymizer = Anonymizer() if self.anonymize != "off" else None

      self._provider_lock = threading.Lock()
      self._store_lock = threading.Lock()
      self._orchestrator_lock = threading.Lock()

      self._provider = provider
      self._store = store
      self._orchestrator: Optional[Orchestrator] = None

   # ----------------------------
   # Lifecycle
   # ----------------------------
   def start(self) -> None:
      if self.settings.cache_sweep_interval_s > 0:
         self.cache.start_sweeper(self.settings.cache_sweep_interval_s)
      logger.info(
         "Runtime started: provider=%s model=%s cache_max_weight=%d ttl=%.0fs anonymize=%s",
         self.settings.llm_provider, self.settings.llm_model,
         self.settings.cache_max_weight, self.settings.cache_ttl_s, self.anonymize,
      )

   def close(self) -> None:
      self.cache.close()
      provider = self._provider
      if provider is not None and hasattr(provider, "close"):
         provider.close()
      logger.info("Runtime closed")

   # ----------------------------
   # Components
   # ----------------------------
   def get_provider(self) -> LLMProvider:
      if self._provider is not None:
         return self._provider
      with self._provider_lock:
         if self._provider is None:
            self._provider = get_provider(self.settings, metrics=self.metrics)
      return self._provider

   def get_store(self) -> SessionStore:
      if self._store is not None:
         return self._store
      with self._store_lock:
         if self._store is None:
            init_db(self.settings)
            self._store = SqlSessionStore(self.settings)
      return self._store

   def get_orchestrator(self) -> Orchestrator:
      if self._orchestrator is not None:
         return self._orchestrator
      with self._orchestrator_lock:
         if self._orchestrator is None:
            self._orchestrator = Orchestrator(
               self.get_store(),
               self.cache,
               self.get_provider(),
               system_prompt=self.settings.system_prompt,
               context_window_size=self.settings.context_window_size,
               provider_timeout_s=self.settings.provider_timeout_s,
               max_prompt_chars=self.settings.max_prompt_chars,
               anonymizer=self.anonymizer,
               anonymize=self.anonymize,
               metrics=self.metrics,
            )
      return self._orchestrator
