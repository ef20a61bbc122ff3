"""Trigger and action registries consulted by the validator and the runner."""

import threading
from typing import Any, Callable, Dict, List, Optional, Type
from pydantic import BaseModel, ValidationError

from ..models.core import ActionInfo, ActionResult, TriggerContext, TriggerInfo
from .exceptions import RegistryError, TriggerPayloadError, UnknownTriggerError
from .logging import get_logger

logger = get_logger(__name__)

ContextResolver = Callable[[BaseModel], Dict[str, Any]]


class TriggerDefinition:
    """A registered trigger type."""

    def __init__(
        self,
        trigger_type: str,
        label: str,
        payload_schema: Type[BaseModel],
        resolve_context: ContextResolver,
        description: str = ""
    ):
        self.type = trigger_type
        self.label = label
        self.payload_schema = payload_schema
        self.resolve_context = resolve_context
        self.description = description

    def info(self) -> TriggerInfo:
        return TriggerInfo(type=self.type, label=self.label, description=self.description or None)


class TriggerRegistry:
    """Registry of the business events a workflow can start from."""

    def __init__(self):
        self._triggers: Dict[str, TriggerDefinition] = {}
        self._lock = threading.RLock()
        self._frozen = False

    def register(
        self,
        trigger_type: str,
        label: str,
        payload_schema: Type[BaseModel],
        resolve_context: ContextResolver,
        description: str = ""
    ) -> TriggerDefinition:
        """Register a trigger type, replacing any previous registration of it.

        Args:
            trigger_type: Event type name, e.g. ``orders.created``
            label: Display label for the catalog
            payload_schema: Pydantic model the raw payload must satisfy
            resolve_context: Maps the parsed payload to execution context entries
            description: Optional catalog description

        Returns:
            The stored trigger definition

        Raises:
            RegistryError: If the registry is frozen or the arguments are invalid
        """
        if not trigger_type or not trigger_type.strip():
            raise RegistryError("Trigger type cannot be empty", operation="register")
        trigger_type = trigger_type.strip()

        if not (isinstance(payload_schema, type) and issubclass(payload_schema, BaseModel)):
            raise RegistryError(
                f"Trigger '{trigger_type}' payload schema must be a pydantic model",
                type_name=trigger_type,
                operation="register"
            )
        if not callable(resolve_context):
            raise RegistryError(
                f"Trigger '{trigger_type}' context resolver must be callable",
                type_name=trigger_type,
                operation="register"
            )

        definition = TriggerDefinition(trigger_type, label, payload_schema, resolve_context, description)
        with self._lock:
            self._ensure_writable(trigger_type)
            if trigger_type in self._triggers:
                logger.warning(f"Trigger '{trigger_type}' re-registered; previous registration replaced")
            self._triggers[trigger_type] = definition

        logger.debug(f"Registered trigger '{trigger_type}'")
        return definition

    def get(self, trigger_type: str) -> Optional[TriggerDefinition]:
        return self._triggers.get(trigger_type)

    def has(self, trigger_type: str) -> bool:
        return trigger_type in self._triggers

    def list(self) -> List[TriggerInfo]:
        """Registered triggers in registration order."""
        return [definition.info() for definition in self._triggers.values()]

    def parse(self, trigger_type: str, payload: Optional[Dict[str, Any]]) -> BaseModel:
        """Validate a raw payload against the trigger's schema.

        Raises:
            UnknownTriggerError: If the trigger type is not registered
            TriggerPayloadError: If the payload does not satisfy the schema
        """
        definition = self.get(trigger_type)
        if definition is None:
            raise UnknownTriggerError(trigger_type)

        try:
            return definition.payload_schema.model_validate(payload or {})
        except ValidationError as e:
            errors = [
                {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
                for error in e.errors()
            ]
            raise TriggerPayloadError(
                f"Invalid payload for trigger {trigger_type}",
                trigger_type=trigger_type,
                errors=errors
            )

    def resolve(self, trigger_type: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Parse the payload, then resolve it into execution context entries."""
        parsed = self.parse(trigger_type, payload)
        context = self._triggers[trigger_type].resolve_context(parsed)
        return dict(context or {})

    def freeze(self) -> None:
        """Make the registry read-only."""
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _ensure_writable(self, trigger_type: str) -> None:
        if self._frozen:
            raise RegistryError(
                f"Cannot register trigger '{trigger_type}': registry is frozen",
                type_name=trigger_type,
                operation="register"
            )

    def __len__(self) -> int:
        return len(self._triggers)

    def __contains__(self, trigger_type: str) -> bool:
        return self.has(trigger_type)


class ActionExecutor:
    """Base class for action types.

    Subclasses set ``type`` and ``label`` and implement ``run``. Overriding
    ``validate`` adds configuration checks to graph validation; it must not
    perform side effects. ``run`` is also called during simulation, with
    ``simulation=True``; executors that call out to external systems are
    responsible for honouring that flag.
    """

    type: str = ""
    label: str = ""
    description: str = ""
    supports_simulation: bool = False

    def run(
        self,
        node: Any,
        context: Dict[str, Any],
        payload: Dict[str, Any],
        trigger: TriggerContext,
        simulation: bool
    ) -> ActionResult:
        raise NotImplementedError

    def validate(self, node: Any) -> List[str]:
        return []

    @property
    def has_validator(self) -> bool:
        return type(self).validate is not ActionExecutor.validate

    def info(self) -> ActionInfo:
        return ActionInfo(
            type=self.type,
            label=self.label,
            description=self.description or None,
            supports_simulation=self.supports_simulation
        )


class FunctionActionExecutor(ActionExecutor):
    """Adapts plain callables to the executor interface."""

    def __init__(
        self,
        action_type: str,
        label: str,
        run: Callable[..., ActionResult],
        validate: Optional[Callable[[Any], List[str]]] = None,
        description: str = "",
        supports_simulation: bool = False
    ):
        self.type = action_type
        self.label = label
        self.description = description
        self.supports_simulation = supports_simulation
        self._run = run
        self._validate = validate

    def run(self, node, context, payload, trigger, simulation):
        return self._run(node, context, payload, trigger, simulation)

    def validate(self, node):
        if self._validate is None:
            return []
        return list(self._validate(node) or [])

    @property
    def has_validator(self) -> bool:
        return self._validate is not None


class ActionRegistry:
    """Registry of the side-effecting steps a workflow can perform."""

    def __init__(self):
        self._actions: Dict[str, ActionExecutor] = {}
        self._lock = threading.RLock()
        self._frozen = False

    def register(self, executor: ActionExecutor) -> ActionExecutor:
        """Register an executor under its ``type``; last registration wins.

        Raises:
            RegistryError: If the registry is frozen or the executor is invalid
        """
        if not isinstance(executor, ActionExecutor):
            raise RegistryError("Action executors must derive from ActionExecutor", operation="register")
        if not executor.type or not executor.type.strip():
            raise RegistryError("Action type cannot be empty", operation="register")

        with self._lock:
            if self._frozen:
                raise RegistryError(
                    f"Cannot register action '{executor.type}': registry is frozen",
                    type_name=executor.type,
                    operation="register"
                )
            if executor.type in self._actions:
                logger.warning(f"Action '{executor.type}' re-registered; previous registration replaced")
            self._actions[executor.type] = executor

        logger.debug(f"Registered action '{executor.type}'")
        return executor

    def register_function(
        self,
        action_type: str,
        label: str,
        run: Callable[..., ActionResult],
        validate: Optional[Callable[[Any], List[str]]] = None,
        description: str = "",
        supports_simulation: bool = False
    ) -> ActionExecutor:
        """Register a plain callable as an action.

        ``run`` receives ``(node, context, payload, trigger, simulation)`` and
        returns an ``ActionResult``.
        """
        if not callable(run):
            raise RegistryError(f"Action '{action_type}' run must be callable", type_name=action_type)
        return self.register(FunctionActionExecutor(
            action_type, label, run,
            validate=validate,
            description=description,
            supports_simulation=supports_simulation
        ))

    def get(self, action_type: str) -> Optional[ActionExecutor]:
        return self._actions.get(action_type)

    def has(self, action_type: str) -> bool:
        return action_type in self._actions

    def list(self) -> List[ActionInfo]:
        """Registered actions in registration order."""
        return [executor.info() for executor in self._actions.values()]

    def freeze(self) -> None:
        """Make the registry read-only."""
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_type: str) -> bool:
        return self.has(action_type)
