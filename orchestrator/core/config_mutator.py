"""Test plan (JMX) mutation applied before every run.

The mutator works on the raw document text so that everything it was not told
to change stays byte-for-byte identical. Edits are keyed by property name and,
for the CSV reference, scoped to the enclosing ``CSVDataSet`` block.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Optional, Union
from xml.sax.saxutils import escape, unescape

from pydantic import ValidationError

from common.models.use_case import UseCase, ThreadGroupConfig, ServerConfig
from common.utils import base_name
from orchestrator.config import LoopPrecedence
from orchestrator.core.exceptions import ConfigurationParseError

logger = logging.getLogger(__name__)

# Search order when patching an existing property
PROPERTY_KINDS = ("stringProp", "boolProp", "intProp", "longProp")

# Element kind used when a missing property has to be inserted
PROPERTY_TYPES = {
    "ThreadGroup.num_threads": "intProp",
    "ThreadGroup.ramp_time": "intProp",
    "ThreadGroup.duration": "longProp",
    "ThreadGroup.scheduler": "boolProp",
    "ThreadGroup.delayedStart": "boolProp",
    "ThreadGroup.same_user_on_next_iteration": "boolProp",
    "LoopController.continue_forever": "boolProp",
}
DEFAULT_PROPERTY_TYPE = "stringProp"

UNBOUNDED_LOOPS = "-1"

SAMPLER_ERROR_ACTIONS = {
    "Continue": "continue",
    "Start Next Thread Loop": "startnextloop",
    "Stop Thread": "stopthread",
    "Stop Test": "stoptest",
    "Stop Test Now": "stoptestnow",
}

# Canonical property and the legacy names only patched when already present
SERVER_PROPERTIES = {
    "server": ("HTTPSampler.domain", ("HTTPSampler.serverName",)),
    "port": ("HTTPSampler.port", ("HTTPSampler.portNumber",)),
    "protocol": ("HTTPSampler.protocol", ("HTTPSampler.protocolType",)),
}

THREAD_GROUP_CLOSE = re.compile(r"([ \t]*)</ThreadGroup>")
CSV_DATA_SET_BLOCK = re.compile(r"<CSVDataSet\b[^>]*(?<!/)>.*?</CSVDataSet>", re.DOTALL)

_XML_ENTITIES = {"&quot;": '"', "&apos;": "'"}


def _property_pattern(kind: str, name: str) -> re.Pattern:
    return re.compile(
        rf'<{kind}\s+name="{re.escape(name)}"\s*(?:/>|>([^<]*)</{kind}>)'
    )


def _render(kind: str, name: str, value: str) -> str:
    return f'<{kind} name="{name}">{escape(value)}</{kind}>'


def _bool(value: bool) -> str:
    return "true" if value else "false"


def find_property(document: str, name: str) -> Optional[tuple[str, str]]:
    """Return ``(kind, value)`` of the first property with this name."""
    for kind in PROPERTY_KINDS:
        match = _property_pattern(kind, name).search(document)
        if match:
            return kind, unescape(match.group(1) or "", _XML_ENTITIES)
    return None


def patch_property(document: str, name: str, value: str) -> tuple[str, bool]:
    """Replace the value of an existing property, keeping its element kind."""
    for kind in PROPERTY_KINDS:
        pattern = _property_pattern(kind, name)
        if pattern.search(document):
            replacement = _render(kind, name, value)
            return pattern.sub(lambda _m: replacement, document), True
    return document, False


def insert_property(document: str, name: str, value: str) -> str:
    """Insert a property before the closing tag of the thread group."""
    kind = PROPERTY_TYPES.get(name, DEFAULT_PROPERTY_TYPE)
    element = _render(kind, name, value)

    if not THREAD_GROUP_CLOSE.search(document):
        logger.warning(f"No ThreadGroup block found, cannot add {name}")
        return document

    logger.debug(f"Adding {kind} {name}={value}")
    return THREAD_GROUP_CLOSE.sub(
        lambda m: f"{m.group(1)}  {element}\n{m.group(1)}</ThreadGroup>",
        document,
    )


def set_property(document: str, name: str, value: str) -> str:
    """Patch a property in place, or insert it with its table-defined kind."""
    document, found = patch_property(document, name, value)
    if found:
        return document
    return insert_property(document, name, value)


def sampler_error_action(label: str) -> str:
    """Map the UI label for 'action after sampler error' to the JMX value."""
    if label in SAMPLER_ERROR_ACTIONS:
        return SAMPLER_ERROR_ACTIONS[label]
    if label in SAMPLER_ERROR_ACTIONS.values():
        return label
    return "continue"


def _load_json_config(raw: Union[str, dict, None], what: str) -> Optional[dict]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationParseError(f"Invalid {what} JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationParseError(f"{what} must be a JSON object")
    return data


def load_thread_group_config(raw: Union[str, dict, None]) -> Optional[ThreadGroupConfig]:
    """Parse a thread group configuration, None when nothing was declared."""
    data = _load_json_config(raw, "thread group configuration")
    if data is None:
        return None
    try:
        return ThreadGroupConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationParseError(f"Invalid thread group configuration: {e}") from e


def load_server_config(raw: Union[str, dict, None]) -> Optional[ServerConfig]:
    """Parse a server configuration, None when nothing was declared."""
    data = _load_json_config(raw, "server configuration")
    if data is None:
        return None
    try:
        return ServerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationParseError(f"Invalid server configuration: {e}") from e


def plan_thread_group(
    config: ThreadGroupConfig,
    precedence: LoopPrecedence = LoopPrecedence.INFINITE_WINS,
) -> list[tuple[str, str]]:
    """Resolve the thread group settings into ordered property assignments.

    Under INFINITE_WINS an infinite loop request is honoured even when a
    duration or startup delay is configured: neither the duration nor the
    scheduler is written. The lifetime toggle only applies to finite runs
    without timing. Under SCHEDULER_WINS a duration or delay always turns the
    scheduler on.
    """
    changes: list[tuple[str, str]] = []

    if config.number_of_threads is not None:
        changes.append(("ThreadGroup.num_threads", str(config.number_of_threads)))
    if config.ramp_up_period is not None:
        changes.append(("ThreadGroup.ramp_time", str(config.ramp_up_period)))

    infinite = bool(config.infinite_loop)
    if infinite:
        changes.append(("LoopController.loops", UNBOUNDED_LOOPS))
        changes.append(("LoopController.continue_forever", "true"))
    else:
        loops = config.loop_count if config.loop_count is not None else 1
        changes.append(("LoopController.loops", str(loops)))
        changes.append(("LoopController.continue_forever", "false"))

    has_timing = config.duration is not None or config.startup_delay is not None
    if has_timing and (not infinite or precedence == LoopPrecedence.SCHEDULER_WINS):
        changes.append(("ThreadGroup.scheduler", "true"))
        if config.duration is not None:
            changes.append(("ThreadGroup.duration", str(config.duration)))
    elif not infinite and config.specify_thread_lifetime is not None:
        changes.append(("ThreadGroup.scheduler", _bool(config.specify_thread_lifetime)))

    if config.startup_delay is not None:
        changes.append(("ThreadGroup.delay", str(config.startup_delay)))

    if config.same_user_on_each_iteration is not None:
        changes.append((
            "ThreadGroup.same_user_on_next_iteration",
            _bool(config.same_user_on_each_iteration),
        ))
    if config.delay_thread_creation is not None:
        changes.append(("ThreadGroup.delayedStart", _bool(config.delay_thread_creation)))
    if config.action_after_sampler_error is not None:
        changes.append((
            "ThreadGroup.on_sample_error",
            sampler_error_action(config.action_after_sampler_error),
        ))

    return changes


class ConfigMutator:
    """Apply a use case's declared configuration to its test plan."""

    def __init__(
        self,
        csv_server_dir: str,
        precedence: LoopPrecedence = LoopPrecedence.INFINITE_WINS,
    ):
        self.csv_server_dir = csv_server_dir.rstrip("/\\")
        self.precedence = precedence

    def csv_target_path(self, data_file_path: str) -> str:
        """Server-side location of a data file."""
        return f"{self.csv_server_dir}/{base_name(data_file_path)}"

    def mutate(
        self,
        document: str,
        use_case: UseCase,
        data_file_path: Optional[str] = None,
    ) -> str:
        """Return a copy of ``document`` with the use case configuration applied.

        Thread group and server configurations fail independently: a
        malformed one is logged and skipped, the rest is still applied.
        """
        logger.info(f"Mutating test plan for use case: {use_case.id}")
        result = self.rewrite_csv_filename(document, data_file_path)

        try:
            thread_group = load_thread_group_config(use_case.thread_group_config)
        except ConfigurationParseError as e:
            logger.error(f"Skipping thread group configuration for {use_case.id}: {e}")
            thread_group = None
        if thread_group is not None:
            result = self.apply_thread_group(result, thread_group)

        try:
            server = load_server_config(use_case.server_config)
        except ConfigurationParseError as e:
            logger.error(f"Skipping server configuration for {use_case.id}: {e}")
            server = None
        if server is not None:
            result = self.apply_server(result, server)

        return result

    def mutate_file(
        self,
        jmx_path: str | Path,
        use_case: UseCase,
        data_file_path: Optional[str] = None,
    ) -> str:
        """Read a test plan from disk and return the mutated text."""
        document = Path(jmx_path).read_text(encoding="utf-8")
        return self.mutate(document, use_case, data_file_path)

    def apply_thread_group(self, document: str, config: ThreadGroupConfig) -> str:
        for name, value in plan_thread_group(config, self.precedence):
            document = set_property(document, name, value)
            logger.debug(f"Set {name}={value}")
        return document

    def apply_server(self, document: str, config: ServerConfig) -> str:
        for key, (canonical, aliases) in SERVER_PROPERTIES.items():
            value = getattr(config, key)
            if value is None:
                continue
            value = str(value)
            document = set_property(document, canonical, value)
            for alias in aliases:
                document, _ = patch_property(document, alias, value)
            logger.debug(f"Set {canonical}={value}")
        return document

    def rewrite_csv_filename(self, document: str, data_file_path: Optional[str]) -> str:
        """Point the first CSV Data Set Config at the server copy of the data file."""
        if not data_file_path or not data_file_path.strip():
            return document

        block = CSV_DATA_SET_BLOCK.search(document)
        if block is None:
            logger.info("No CSVDataSet block in test plan, CSV reference left unchanged")
            return document

        target = self.csv_target_path(data_file_path)
        filename = _property_pattern("stringProp", "filename")
        body = block.group(0)
        match = filename.search(body)
        if match is None:
            logger.warning("CSVDataSet block has no filename property")
            return document

        current = unescape(match.group(1) or "", _XML_ENTITIES)
        if current == target:
            logger.debug(f"CSV reference already points at {target}")
            return document

        new_body = body[:match.start()] + _render("stringProp", "filename", target) + body[match.end():]
        logger.info(f"Rewrote CSV reference {current!r} -> {target!r}")
        return document[:block.start()] + new_body + document[block.end():]
