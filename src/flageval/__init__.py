from __future__ import annotations
import re
import json
import os
import time
import base64
import logging
import datetime
import operator
import threading
import dill
import jsonschema
from abc import abstractmethod
from collections.abc import Callable
from enum import Enum
from functools import lru_cache
from hashlib import sha256
from typing import Any, Literal

from prometheus_client import Histogram


logger = logging.getLogger(__name__)

type JSONValue = None | bool | int | float | str | list[JSONValue] | dict[str, JSONValue]
type Exposure = dict[str, str]
type DictSpecs = dict[str, Any]
type HashAlgo = Literal["none", "djb2", "sha256"]
type CountryLookup = Callable[[str], str | None]
type UserAgentParser = Callable[[str], UserAgentInfo | None]

GATE_EXPOSURE_EVENT = "statsig::gate_exposure"
CONFIG_EXPOSURE_EVENT = "statsig::config_exposure"
LAYER_EXPOSURE_EVENT = "statsig::layer_exposure"

_DEFAULT_RULE = "default"
_DISABLED_RULE = "disabled"


# Hashing


@lru_cache(maxsize=1000)
def _hash_to_bucket(s: str) -> int:
    """
    Hashes the given string to an unsigned 64 bit integer.

    Stability of this function is crucial. Every SDK in every language buckets
    users with it so the first 8 bytes of the SHA-256 digest must always be
    read as a big endian unsigned integer. Unpaired surrogates encode as "?"
    the way the JVM SDKs encode them.
    """
    return int.from_bytes(
        sha256(s.encode("utf-8", "replace")).digest()[:8],
        byteorder="big",  # Being explicit to survive default changes.
        signed=False,  # Being explicit to survive default changes.
    )


def _sha256_base64(s: str) -> str:
    return base64.b64encode(sha256(s.encode("utf-8", "replace")).digest()).decode("ascii")


def _djb2(s: str) -> str:
    """
    32 bit djb2 hash of the given string as an unsigned decimal string.

    Other SDKs iterate UTF-16 code units so we do the same to agree with them
    on characters outside the basic multilingual plane.
    """
    h = 0
    units = s.encode("utf-16-be", "surrogatepass")
    for i in range(0, len(units), 2):
        h = ((h << 5) - h + ((units[i] << 8) | units[i + 1])) & 0xFFFFFFFF
    return str(h)


def hash_name(name: str, algo: HashAlgo = "sha256") -> str:
    """
    Obfuscate a spec or parameter name for disclosure to less trusted callers.
    """
    match algo:
        case "none":
            return name
        case "djb2":
            return _djb2(name)
        case "sha256":
            return _sha256_base64(name)
        case _:
            raise ValueError(f"unknown hash algorithm {algo!r}")


def _segment_hash_prefix(s: str) -> str:
    return _sha256_base64(s)[:8]


# JSON value coercion


def _as_string(v: JSONValue) -> str | None:
    if v is None:
        return None
    if isinstance(v, str):
        return v
    if isinstance(v, bool):
        # Match the JSON spelling used by the other SDKs.
        return "true" if v else "false"
    return str(v)


def _as_float(v: JSONValue) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v)
        except ValueError:
            return None
    return None


def _values_equal(a: JSONValue, b: JSONValue) -> bool:
    # bool is a subclass of int in python, 1 must not equal True.
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    return a == b


def _strip_prerelease(v: str) -> str:
    i = v.find("-")
    return v[:i] if i > 0 else v


def _version_compare(v1: str, v2: str) -> int:
    """
    Compare dot separated integer versions. Missing trailing components are
    treated as 0. Raises ValueError on non integer components.
    """
    parts1 = v1.split(".")
    parts2 = v2.split(".")
    for i in range(max(len(parts1), len(parts2))):
        c1 = int(parts1[i]) if i < len(parts1) else 0
        c2 = int(parts2[i]) if i < len(parts2) else 0
        if c1 < c2:
            return -1
        if c1 > c2:
            return 1
    return 0


_epoch = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


def _unix_millis_from_tz_time(s: str) -> int:
    """
    Parse the given ISO 8601 time string and return the number of milliseconds
    since the unix epoch.
    """
    t = datetime.datetime.fromisoformat(s)
    if t.tzinfo is None:
        raise ValueError("Timezone missing")
    return (t - _epoch) // datetime.timedelta(milliseconds=1)


def _as_epoch_millis(v: JSONValue) -> int | None:
    """
    Accepts epoch seconds or milliseconds as a number or a numeric string, or
    an ISO 8601 string with timezone. Values with fewer than 11 digits are
    seconds.
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        epoch = int(v)
    elif isinstance(v, str):
        try:
            epoch = int(v)
        except ValueError:
            try:
                return _unix_millis_from_tz_time(v)
            except ValueError as e:
                logger.warning("Unparseable date %r: %s", v, e)
                return None
    else:
        return None
    if len(str(epoch)) < 11:
        epoch *= 1000
    return epoch


def _utc_day(millis: int) -> tuple[int, int]:
    d = _epoch + datetime.timedelta(milliseconds=millis)
    return d.year, d.timetuple().tm_yday


def _join_version(*parts: str | None) -> str:
    return ".".join(p if p else "0" for p in parts)


# User


class UserAgentInfo:
    """
    The parts of a parsed user agent that conditions can target. Produced by the
    user agent parser collaborator given to the evaluator.
    """

    __slots__ = (
        "os_name",
        "os_major",
        "os_minor",
        "os_patch",
        "browser_name",
        "browser_major",
        "browser_minor",
        "browser_patch",
    )
    os_name: str | None
    os_major: str | None
    os_minor: str | None
    os_patch: str | None
    browser_name: str | None
    browser_major: str | None
    browser_minor: str | None
    browser_patch: str | None

    def __init__(self, **kwargs: str | None):
        for k in self.__slots__:
            setattr(self, k, kwargs.pop(k, None))
        if kwargs:
            raise TypeError(f"unexpected fields {sorted(kwargs)}")


# Maps the wire name of each user field to the attribute holding it.
_user_wire_fields = {
    "userID": "user_id",
    "customIDs": "custom_ids",
    "email": "email",
    "ip": "ip",
    "userAgent": "user_agent",
    "country": "country",
    "locale": "locale",
    "appVersion": "app_version",
    "custom": "custom",
    "privateAttributes": "private_attributes",
    "statsigEnvironment": "statsig_environment",
}

# Canonical user fields addressable from conditions, keyed by lowercase name.
_user_condition_fields = {
    "userid": "user_id",
    "user_id": "user_id",
    "email": "email",
    "ip": "ip",
    "ipaddress": "ip",
    "ip_address": "ip",
    "useragent": "user_agent",
    "user_agent": "user_agent",
    "country": "country",
    "locale": "locale",
    "appversion": "app_version",
    "app_version": "app_version",
}


class User:
    """
    The user a gate, config or layer is evaluated for. Either user_id or at
    least one custom id is expected. private_attributes are used for evaluation
    only and never leave the process.
    """

    __slots__ = tuple(_user_wire_fields.values())
    user_id: str | None
    custom_ids: dict[str, str] | None
    email: str | None
    ip: str | None
    user_agent: str | None
    country: str | None
    locale: str | None
    app_version: str | None
    custom: dict[str, JSONValue] | None
    private_attributes: dict[str, JSONValue] | None
    statsig_environment: dict[str, str] | None

    def __init__(
        self,
        user_id: str | None = None,
        custom_ids: dict[str, str] | None = None,
        email: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        country: str | None = None,
        locale: str | None = None,
        app_version: str | None = None,
        custom: dict[str, JSONValue] | None = None,
        private_attributes: dict[str, JSONValue] | None = None,
        statsig_environment: dict[str, str] | None = None,
    ):
        for name, v in (
            ("user_id", user_id),
            ("email", email),
            ("ip", ip),
            ("user_agent", user_agent),
            ("country", country),
            ("locale", locale),
            ("app_version", app_version),
        ):
            if v is not None and not isinstance(v, str):
                raise TypeError(f"{name} must be a string, not {type(v).__name__}")
        for name, m in (
            ("custom_ids", custom_ids),
            ("custom", custom),
            ("private_attributes", private_attributes),
            ("statsig_environment", statsig_environment),
        ):
            if m is None:
                continue
            if not isinstance(m, dict):
                raise TypeError(f"{name} must be a dict, not {type(m).__name__}")
            for k in m:
                if not isinstance(k, str):
                    raise TypeError(f"{name} key must be a string, not {type(k).__name__}")
        self.user_id = user_id
        self.custom_ids = custom_ids
        self.email = email
        self.ip = ip
        self.user_agent = user_agent
        self.country = country
        self.locale = locale
        self.app_version = app_version
        self.custom = custom
        self.private_attributes = private_attributes
        self.statsig_environment = statsig_environment

    @staticmethod
    def from_dict(d: dict[str, Any]) -> User:
        unknown = d.keys() - _user_wire_fields.keys()
        if unknown:
            raise TypeError(f"unknown user fields {sorted(unknown)}")
        return User(**{_user_wire_fields[k]: v for k, v in d.items()})

    def _replace(self, **changes: Any) -> User:
        kwargs = {k: getattr(self, k) for k in self.__slots__}
        kwargs.update(changes)
        return User(**kwargs)

    def get_id(self, id_type: str | None) -> str | None:
        """
        The unit id for the given id type. userID when id_type is empty or
        "userID" (any case), else the matching custom id.
        """
        if not id_type or id_type.lower() == "userid":
            return self.user_id
        if self.custom_ids is None:
            return None
        v = self.custom_ids.get(id_type)
        if v is None:
            v = self.custom_ids.get(id_type.lower())
        return v

    def copy_for_logging(self) -> User:
        # Never copy private_attributes into anything that gets logged.
        return self._replace(private_attributes=None)

    def to_logging_dict(self) -> dict[str, Any]:
        d = {}
        for wire, attr in _user_wire_fields.items():
            if attr == "private_attributes":
                continue
            v = getattr(self, attr)
            if v is not None:
                d[wire] = v
        return d


def _get_case_insensitive(m: dict[str, Any], key: str) -> Any:
    v = m.get(key)
    if v is None:
        v = m.get(key.lower())
    return v


def _get_user_value_for_field(user: User, field: str) -> JSONValue:
    attr = _user_condition_fields.get(field)
    return getattr(user, attr) if attr else None


def _get_from_user(user: User, field: str) -> JSONValue:
    """
    Resolve a condition field against the canonical user fields, then custom
    attributes, then private attributes. Empty canonical values fall through.
    """
    value = _get_user_value_for_field(user, field)
    if value is None:
        value = _get_user_value_for_field(user, field.lower())
    if (value is None or value == "") and user.custom is not None:
        value = _get_case_insensitive(user.custom, field)
    if (value is None or value == "") and user.private_attributes is not None:
        value = _get_case_insensitive(user.private_attributes, field)
    return value


def _get_from_environment(user: User, field: str) -> str | None:
    if user.statsig_environment is None:
        return None
    return _get_case_insensitive(user.statsig_environment, field)


# Specs


class Condition:
    __slots__ = (
        "type",
        "operator",
        "field",
        "target_value",
        "additional_values",
        "id_type",
    )
    type: str
    operator: str | None
    field: str | None
    target_value: JSONValue
    additional_values: dict[str, JSONValue]
    id_type: str | None

    @staticmethod
    def from_dict(c: DictSpecs) -> Condition:
        cond = Condition()
        cond.type = c["type"]
        cond.operator = c.get("operator")
        cond.field = c.get("field")
        cond.target_value = c.get("targetValue")
        cond.additional_values = c.get("additionalValues") or {}
        cond.id_type = c.get("idType")
        return cond


class Rule:
    """
    An ordered conjunction of conditions. salt defaults to the rule id when
    hashing for the pass percentage.
    """

    __slots__ = (
        "name",
        "id",
        "group_name",
        "pass_percentage",
        "return_value",
        "conditions",
        "id_type",
        "salt",
        "config_delegate",
        "is_experiment_group",
    )
    name: str
    id: str
    group_name: str | None
    pass_percentage: float
    return_value: JSONValue
    conditions: list[Condition]
    id_type: str | None
    salt: str | None
    config_delegate: str | None
    is_experiment_group: bool

    @staticmethod
    def from_dict(r: DictSpecs) -> Rule:
        rule = Rule()
        rule.id = r["id"]
        rule.name = r.get("name") or rule.id
        rule.group_name = r.get("groupName")
        rule.pass_percentage = float(r["passPercentage"])
        rule.return_value = r.get("returnValue")
        rule.conditions = [Condition.from_dict(c) for c in r.get("conditions", [])]
        rule.id_type = r.get("idType")
        rule.salt = r.get("salt")
        rule.config_delegate = r.get("configDelegate") or None
        rule.is_experiment_group = bool(r.get("isExperimentGroup"))
        return rule


class Spec:
    """
    A feature gate or dynamic config definition. Dynamic configs are further
    classified by entity (experiment, layer, segment, holdout, ...).
    """

    __slots__ = (
        "name",
        "type",
        "entity",
        "salt",
        "enabled",
        "default_value",
        "rules",
        "id_type",
        "explicit_parameters",
        "is_active",
        "has_shared_params",
        "target_app_ids",
    )
    name: str
    type: Literal["feature_gate", "dynamic_config"] | str
    entity: str | None
    salt: str
    enabled: bool
    default_value: JSONValue
    rules: list[Rule]
    id_type: str
    explicit_parameters: list[str] | None
    is_active: bool
    has_shared_params: bool
    target_app_ids: frozenset[str] | None

    @staticmethod
    def from_dict(s: DictSpecs) -> Spec:
        spec = Spec()
        spec.name = s["name"]
        spec.type = s["type"]
        spec.entity = s.get("entity")
        spec.salt = s.get("salt") or ""
        spec.enabled = s.get("enabled", True)
        spec.default_value = s.get("defaultValue")
        spec.rules = [Rule.from_dict(r) for r in s.get("rules", [])]
        spec.id_type = s.get("idType") or "userID"
        spec.explicit_parameters = s.get("explicitParameters")
        spec.is_active = bool(s.get("isActive"))
        spec.has_shared_params = bool(s.get("hasSharedParams"))
        target_app_ids = s.get("targetAppIDs")
        spec.target_app_ids = frozenset(target_app_ids) if target_app_ids is not None else None
        return spec


with open(os.path.join(os.path.dirname(__file__), "spec_schema.json")) as f:
    _spec_schema = json.load(f)


class SpecSnapshot:
    """
    An immutable snapshot of all specs from one download. Snapshots are never
    changed after they are built; a newer download replaces them wholesale.
    """

    __slots__ = (
        "gates",
        "configs",
        "layer_configs",
        "layers",
        "experiment_to_layer",
        "id_list_names",
        "time",
        "has_updates",
        "app_id",
        "sdk_keys_to_app_ids",
        "hashed_sdk_keys_to_app_ids",
    )
    gates: dict[str, Spec]
    configs: dict[str, Spec]
    layer_configs: dict[str, Spec]
    layers: dict[str, list[str]]
    experiment_to_layer: dict[str, str]
    id_list_names: frozenset[str]
    time: int
    has_updates: bool
    app_id: str | None
    sdk_keys_to_app_ids: dict[str, str]
    hashed_sdk_keys_to_app_ids: dict[str, str]

    @staticmethod
    def from_bytes(b: bytes) -> SpecSnapshot:
        obj = dill.loads(b)
        assert isinstance(obj, SpecSnapshot)
        return obj

    def to_bytes(self) -> bytes:
        return dill.dumps(self)

    @staticmethod
    def empty() -> SpecSnapshot:
        return SpecSnapshot.from_dict({"has_updates": False})

    @staticmethod
    def from_dict(payload: DictSpecs) -> SpecSnapshot:
        """
        Build a snapshot from a parsed download_config_specs payload. The
        payload is validated first and jsonschema.ValidationError is raised if
        it's malformed.
        """
        jsonschema.validate(payload, _spec_schema)

        def _by_name(specs: list[DictSpecs]) -> dict[str, Spec]:
            # Later entries win on duplicate names.
            return {s["name"]: Spec.from_dict(s) for s in specs}

        snap = SpecSnapshot()
        snap.gates = _by_name(payload.get("feature_gates", []))
        snap.configs = _by_name(payload.get("dynamic_configs", []))
        snap.layer_configs = _by_name(payload.get("layer_configs", []))
        snap.layers = {k: list(v) for k, v in (payload.get("layers") or {}).items()}
        snap.experiment_to_layer = {exp: layer for layer, exps in snap.layers.items() for exp in exps}
        snap.id_list_names = frozenset((payload.get("id_lists") or {}).keys())
        snap.time = payload.get("time", 0)
        snap.has_updates = payload.get("has_updates", True)
        snap.app_id = payload.get("app_id")
        snap.sdk_keys_to_app_ids = dict(payload.get("sdk_keys_to_app_ids") or {})
        snap.hashed_sdk_keys_to_app_ids = dict(payload.get("hashed_sdk_keys_to_app_ids") or {})
        return snap

    def get_gate(self, name: str) -> Spec | None:
        return self.gates.get(name)

    def get_config(self, name: str) -> Spec | None:
        return self.configs.get(name)

    def get_layer_config(self, name: str) -> Spec | None:
        return self.layer_configs.get(name)

    def get_layer_name_for_experiment(self, name: str) -> str | None:
        return self.experiment_to_layer.get(name)

    def get_experiments_in_layer(self, name: str) -> list[str]:
        return self.layers.get(name, [])

    def get_app_id_for_sdk_key(self, sdk_key: str) -> str | None:
        app_id = self.hashed_sdk_keys_to_app_ids.get(_djb2(sdk_key))
        if app_id is None:
            app_id = self.sdk_keys_to_app_ids.get(sdk_key)
        return app_id


class IDList:
    """
    Membership oracle for a named id list. Members are the first 8 characters
    of the base64 encoded SHA-256 digest of each id.
    """

    __slots__ = ("name", "_ids")

    def __init__(self, name: str, ids: set[str] | frozenset[str]):
        self.name = name
        self._ids = frozenset(ids)

    def has_member(self, candidate: str) -> bool:
        return candidate in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class EvaluationReason(Enum):
    NETWORK = "Network"
    LOCAL_OVERRIDE = "LocalOverride"
    UNRECOGNIZED = "Unrecognized"
    UNINITIALIZED = "Uninitialized"
    BOOTSTRAP = "Bootstrap"
    DATA_ADAPTER = "DataAdapter"
    UNSUPPORTED = "Unsupported"
    DEFAULT = "Default"
    PERSISTED = "Persisted"


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


class _StoreState:
    __slots__ = ("snapshot", "reason", "init_time")
    snapshot: SpecSnapshot
    reason: EvaluationReason
    init_time: int

    def __init__(self, snapshot: SpecSnapshot, reason: EvaluationReason, init_time: int):
        self.snapshot = snapshot
        self.reason = reason
        self.init_time = init_time


class SpecStore:
    """
    Holds the current spec snapshot and id lists. An external updater loads new
    snapshots and id lists at any time; each load swaps a single reference so
    concurrent readers never observe a partial update. SpecStore is thread-safe.
    """

    def __init__(self):
        self._state_mu = threading.RLock()
        self._state = _StoreState(SpecSnapshot.empty(), EvaluationReason.UNINITIALIZED, 0)
        self._id_lists_mu = threading.RLock()
        self._id_lists: dict[str, IDList] = {}

    def load(self, snapshot: SpecSnapshot, reason: EvaluationReason = EvaluationReason.NETWORK) -> bool:
        """
        Replace the current snapshot. Snapshots without updates are ignored.
        Returns whether the snapshot was loaded.
        """
        if not snapshot.has_updates:
            return False
        if reason in (EvaluationReason.UNINITIALIZED, EvaluationReason.UNRECOGNIZED):
            raise ValueError(f"{reason.name} is not a valid reason for loaded specs")
        with self._state_mu:
            init_time = self._state.init_time or _now_millis()
            self._state = _StoreState(snapshot, reason, init_time)
        logger.debug("Loaded specs from %s at time %d", reason.name, snapshot.time)
        return True

    def current(self) -> _StoreState:
        with self._state_mu:
            state = self._state
        return state

    def set_id_list(self, name: str, ids: set[str] | frozenset[str]):
        id_list = IDList(name, ids)
        with self._id_lists_mu:
            self._id_lists = {**self._id_lists, name: id_list}

    def remove_id_list(self, name: str):
        with self._id_lists_mu:
            self._id_lists = {k: v for k, v in self._id_lists.items() if k != name}

    def get_id_list(self, name: str) -> IDList | None:
        with self._id_lists_mu:
            id_lists = self._id_lists
        return id_lists.get(name)

    def get_gate(self, name: str) -> Spec | None:
        return self.current().snapshot.get_gate(name)

    def get_config(self, name: str) -> Spec | None:
        return self.current().snapshot.get_config(name)

    def get_layer_config(self, name: str) -> Spec | None:
        return self.current().snapshot.get_layer_config(name)

    def get_layer_name_for_experiment(self, name: str) -> str | None:
        return self.current().snapshot.get_layer_name_for_experiment(name)

    def get_evaluation_reason(self) -> EvaluationReason:
        return self.current().reason

    def get_last_update_time(self) -> int:
        return self.current().snapshot.time

    def get_init_time(self) -> int:
        return self.current().init_time


# Evaluation results


class EvaluationDetails:
    __slots__ = ("config_sync_time", "init_time", "reason", "server_time")
    config_sync_time: int
    init_time: int
    reason: EvaluationReason
    server_time: int

    def __init__(self, config_sync_time: int, init_time: int, reason: EvaluationReason):
        self.config_sync_time = config_sync_time
        self.init_time = init_time
        self.reason = reason
        self.server_time = _now_millis()

    def to_dict(self) -> dict[str, str]:
        return {
            "reason": self.reason.name,
            "configSyncTime": str(self.config_sync_time),
            "initTime": str(self.init_time),
            "serverTime": str(self.server_time),
        }


def _details(state: _StoreState, reason: EvaluationReason) -> EvaluationDetails:
    if reason is EvaluationReason.UNINITIALIZED:
        return EvaluationDetails(0, 0, reason)
    return EvaluationDetails(state.snapshot.time, state.init_time, reason)


class ConfigEvaluation:
    """
    The result of evaluating a gate, config, experiment or layer. A fresh
    instance is produced for each evaluation and it's not changed once returned.

    undelegated_secondary_exposures are the exposures gathered before a layer
    followed its config delegate. Layer exposures for non explicit parameters
    report only those.
    """

    __slots__ = (
        "boolean_value",
        "json_value",
        "rule_id",
        "group_name",
        "secondary_exposures",
        "undelegated_secondary_exposures",
        "explicit_parameters",
        "config_delegate",
        "evaluation_details",
        "is_experiment_group",
        "is_active",
        "id_type",
    )
    boolean_value: bool
    json_value: JSONValue
    rule_id: str
    group_name: str | None
    secondary_exposures: list[Exposure]
    undelegated_secondary_exposures: list[Exposure]
    explicit_parameters: list[str] | None
    config_delegate: str | None
    evaluation_details: EvaluationDetails | None
    is_experiment_group: bool
    is_active: bool
    id_type: str

    def __init__(
        self,
        boolean_value: bool = False,
        json_value: JSONValue = None,
        rule_id: str = "",
        group_name: str | None = None,
        secondary_exposures: list[Exposure] | None = None,
        undelegated_secondary_exposures: list[Exposure] | None = None,
        explicit_parameters: list[str] | None = None,
        config_delegate: str | None = None,
        evaluation_details: EvaluationDetails | None = None,
        is_experiment_group: bool = False,
        is_active: bool = False,
        id_type: str = "",
    ):
        self.boolean_value = boolean_value
        self.json_value = json_value
        self.rule_id = rule_id
        self.group_name = group_name
        self.secondary_exposures = secondary_exposures if secondary_exposures is not None else []
        self.undelegated_secondary_exposures = undelegated_secondary_exposures if undelegated_secondary_exposures is not None else []
        self.explicit_parameters = explicit_parameters
        self.config_delegate = config_delegate
        self.evaluation_details = evaluation_details
        self.is_experiment_group = is_experiment_group
        self.is_active = is_active
        self.id_type = id_type

    @property
    def reason(self) -> EvaluationReason | None:
        return self.evaluation_details.reason if self.evaluation_details else None

    def __repr__(self) -> str:
        return f"ConfigEvaluation(value={self.json_value!r}, pass={self.boolean_value}, rule_id={self.rule_id!r}, reason={self.reason})"


def _clean_exposures(exposures: list[Exposure]) -> list[Exposure]:
    """
    Drop segment exposures and duplicates, keeping the first occurrence.
    """
    return _dedupe_exposures([e for e in exposures if not e.get("gate", "").startswith("segment:")])


def _dedupe_exposures(exposures: list[Exposure]) -> list[Exposure]:
    seen = set()
    res = []
    for e in exposures:
        key = (e.get("gate"), e.get("gateValue"), e.get("ruleID"))
        if key in seen:
            continue
        seen.add(key)
        res.append(e)
    return res


# Exposure metadata


def gate_exposure_metadata(gate_name: str, evaluation: ConfigEvaluation, is_manual_exposure: bool = False) -> dict[str, str]:
    metadata = {
        "gate": gate_name,
        "gateValue": _as_string(evaluation.boolean_value) or "false",
        "ruleID": evaluation.rule_id,
        "isManualExposure": _as_string(is_manual_exposure) or "false",
    }
    if evaluation.evaluation_details is not None:
        metadata.update(evaluation.evaluation_details.to_dict())
    return metadata


def config_exposure_metadata(config_name: str, evaluation: ConfigEvaluation, is_manual_exposure: bool = False) -> dict[str, str]:
    metadata = {
        "config": config_name,
        "ruleID": evaluation.rule_id,
        "isManualExposure": _as_string(is_manual_exposure) or "false",
    }
    if evaluation.evaluation_details is not None:
        metadata.update(evaluation.evaluation_details.to_dict())
    return metadata


def layer_exposure_metadata(
    layer_name: str,
    parameter_name: str,
    evaluation: ConfigEvaluation,
    is_manual_exposure: bool = False,
) -> tuple[dict[str, str], list[Exposure]]:
    """
    Metadata and secondary exposures for the exposure of one layer parameter.

    Parameters owned by the allocated experiment report the full exposure path
    and the experiment name. Everything else only reports what the layer itself
    gathered before delegating.
    """
    is_explicit = parameter_name in (evaluation.explicit_parameters or [])
    if is_explicit:
        exposures = evaluation.secondary_exposures
        allocated_experiment = evaluation.config_delegate or ""
    else:
        exposures = evaluation.undelegated_secondary_exposures
        allocated_experiment = ""
    metadata = {
        "config": layer_name,
        "ruleID": evaluation.rule_id,
        "allocatedExperiment": allocated_experiment,
        "parameterName": parameter_name,
        "isExplicitParameter": _as_string(is_explicit) or "false",
        "isManualExposure": _as_string(is_manual_exposure) or "false",
    }
    if evaluation.evaluation_details is not None:
        metadata.update(evaluation.evaluation_details.to_dict())
    return metadata, exposures


class ExposureLogger:
    """
    The exposure logger receives exposure events for the analytics pipeline.
    Batching, flushing and retrying are up to the implementation.
    """

    @abstractmethod
    def log_exposure(
        self,
        event_name: str,
        user: User,
        metadata: dict[str, str],
        secondary_exposures: list[Exposure],
    ) -> None: ...


# Evaluation


class _DepthExceeded(Exception):
    pass


class _EvaluationContext:
    __slots__ = ("user", "state", "client_sdk_key", "depth", "max_depth")
    user: User
    state: _StoreState
    client_sdk_key: str | None
    depth: int
    max_depth: int

    def __init__(self, user: User, state: _StoreState, max_depth: int, client_sdk_key: str | None = None, depth: int = 0):
        self.user = user
        self.state = state
        self.max_depth = max_depth
        self.client_sdk_key = client_sdk_key
        self.depth = depth

    def nested(self) -> _EvaluationContext:
        if self.depth >= self.max_depth:
            raise _DepthExceeded(f"nesting deeper than {self.max_depth}, specs likely reference each other in a cycle")
        return _EvaluationContext(self.user, self.state, self.max_depth, self.client_sdk_key, self.depth + 1)


class _ConditionResult:
    __slots__ = ("passed", "escape_to_caller", "value", "secondary_exposures")
    passed: bool
    escape_to_caller: bool
    value: JSONValue
    secondary_exposures: list[Exposure]

    def __init__(
        self,
        passed: bool,
        escape_to_caller: bool = False,
        value: JSONValue = None,
        secondary_exposures: list[Exposure] | None = None,
    ):
        self.passed = passed
        self.escape_to_caller = escape_to_caller
        self.value = value
        self.secondary_exposures = secondary_exposures or []


def _match_string_in_array(value: JSONValue, target: JSONValue, compare: Callable[[str, str], bool]) -> bool:
    s = _as_string(value)
    if s is None or not isinstance(target, list):
        return False
    for t in target:
        ts = _as_string(t)
        if ts is not None and compare(s, ts):
            return True
    return False


def _array_contains(values: list[JSONValue], item: JSONValue) -> bool:
    if any(_values_equal(v, item) for v in values):
        return True
    # Numeric ids may be listed as strings on one side only.
    f = _as_float(item) if isinstance(item, str) else None
    return f is not None and any(_values_equal(v, f) for v in values)


_numeric_ops: dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}

_version_ops: dict[str, Callable[[int], bool]] = {
    "version_gt": lambda c: c > 0,
    "version_gte": lambda c: c >= 0,
    "version_lt": lambda c: c < 0,
    "version_lte": lambda c: c <= 0,
    "version_eq": lambda c: c == 0,
    "version_neq": lambda c: c != 0,
}

# operator -> (string comparison, negate the match)
_string_array_ops: dict[str, tuple[Callable[[str, str], bool], bool]] = {
    "any": (lambda a, b: a.lower() == b.lower(), False),
    "none": (lambda a, b: a.lower() == b.lower(), True),
    "any_case_sensitive": (operator.eq, False),
    "none_case_sensitive": (operator.eq, True),
    "str_starts_with_any": (lambda a, b: a.lower().startswith(b.lower()), False),
    "str_ends_with_any": (lambda a, b: a.lower().endswith(b.lower()), False),
    "str_contains_any": (lambda a, b: b.lower() in a.lower(), False),
    "str_contains_none": (lambda a, b: b.lower() in a.lower(), True),
}

_date_ops: dict[str, Callable[[int, int], bool]] = {
    "before": operator.lt,
    "after": operator.gt,
    "on": lambda a, b: _utc_day(a) == _utc_day(b),
}


_prom_eval_duration = Histogram(
    "flageval_evaluation_seconds",
    "Gate, config and layer evaluation duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["entity", "reason"],
)


type _Entity = Literal["gate", "config", "layer"]


class Evaluator:
    """
    The evaluator answers gate, config, experiment and layer questions for a
    user against the current snapshot of a SpecStore, without any network
    call. The evaluator is thread-safe and evaluation never raises.
    """

    def __init__(
        self,
        store: SpecStore,
        exposure_logger: ExposureLogger | None = None,
        country_lookup: CountryLookup | None = None,
        user_agent_parser: UserAgentParser | None = None,
        disable_ip_resolution: bool = False,
        max_depth: int = 10,
        escape_unsupported: bool = False,
    ):
        self._store = store
        self._exposure_logger = exposure_logger
        self._country_lookup = country_lookup
        self._user_agent_parser = user_agent_parser
        self._disable_ip_resolution = disable_ip_resolution
        self._max_depth = max_depth
        self._escape_unsupported = escape_unsupported
        self._default_environment_mu = threading.RLock()
        self._default_environment: dict[str, str] | None = None
        self._overrides_mu = threading.Lock()
        self._overrides: dict[_Entity, dict[str, JSONValue]] = {
            "gate": {},
            "config": {},
            "layer": {},
        }

    # Configuration and overrides

    def set_default_environment(self, environment: dict[str, str] | None = None):
        """
        Set the environment tags applied to users that don't carry their own
        statsig_environment. set_default_environment is thread-safe.
        """
        if environment is not None:
            environment = dict(environment)
        with self._default_environment_mu:
            self._default_environment = environment

    def _normalize_user(self, user: User) -> User:
        with self._default_environment_mu:
            env = self._default_environment
        if env is None or user.statsig_environment is not None:
            return user
        return user._replace(statsig_environment=env)

    def _set_override(self, entity: _Entity, name: str, value: JSONValue):
        with self._overrides_mu:
            self._overrides[entity][name] = value

    def _remove_override(self, entity: _Entity, name: str):
        with self._overrides_mu:
            self._overrides[entity].pop(name, None)

    def _get_override(self, entity: _Entity, name: str) -> tuple[bool, JSONValue]:
        with self._overrides_mu:
            overrides = self._overrides[entity]
            if name not in overrides:
                return False, None
            return True, overrides[name]

    def override_gate(self, name: str, value: bool):
        self._set_override("gate", name, bool(value))

    def override_config(self, name: str, value: dict[str, JSONValue]):
        self._set_override("config", name, value)

    def override_layer(self, name: str, value: dict[str, JSONValue]):
        self._set_override("layer", name, value)

    def remove_gate_override(self, name: str):
        self._remove_override("gate", name)

    def remove_config_override(self, name: str):
        self._remove_override("config", name)

    def remove_layer_override(self, name: str):
        self._remove_override("layer", name)

    # Public evaluation

    def check_gate(self, user: User, name: str, disable_exposure: bool = False) -> ConfigEvaluation:
        """
        Evaluate the named feature gate. boolean_value holds the answer.
        """
        e = self._evaluate_top_level("gate", user, name)
        if not disable_exposure:
            self._log_exposure(GATE_EXPOSURE_EVENT, user, gate_exposure_metadata(name, e), e.secondary_exposures)
        return e

    def get_config(self, user: User, name: str, disable_exposure: bool = False) -> ConfigEvaluation:
        """
        Evaluate the named dynamic config. json_value holds the answer.
        """
        e = self._evaluate_top_level("config", user, name)
        if not disable_exposure:
            self._log_exposure(CONFIG_EXPOSURE_EVENT, user, config_exposure_metadata(name, e), e.secondary_exposures)
        return e

    def get_experiment(self, user: User, name: str, disable_exposure: bool = False) -> ConfigEvaluation:
        return self.get_config(user, name, disable_exposure)

    def get_layer(self, user: User, name: str) -> ConfigEvaluation:
        """
        Evaluate the named layer. Layers are exposed per parameter, see
        log_layer_exposure.
        """
        return self._evaluate_top_level("layer", user, name)

    def log_layer_exposure(self, user: User, layer_name: str, parameter_name: str, evaluation: ConfigEvaluation):
        metadata, exposures = layer_exposure_metadata(layer_name, parameter_name, evaluation)
        self._log_exposure(LAYER_EXPOSURE_EVENT, user, metadata, exposures)

    def get_experiment_in_layer_for_user(self, user: User, layer_name: str, disable_exposure: bool = False) -> ConfigEvaluation:
        """
        The experiment of the given layer the user is overridden into, or else
        allocated to.
        """
        state = self._store.current()
        if state.reason is EvaluationReason.UNINITIALIZED:
            return ConfigEvaluation(evaluation_details=_details(state, EvaluationReason.UNINITIALIZED))
        experiments = state.snapshot.get_experiments_in_layer(layer_name)
        try:
            for predicate in (self.is_user_overridden_to_experiment, self.is_user_allocated_to_experiment):
                for name in experiments:
                    if predicate(user, name):
                        return self.get_experiment(user, name, disable_exposure)
        except Exception:
            logger.exception("Error finding experiment in layer %r", layer_name)
        return ConfigEvaluation(evaluation_details=_details(state, EvaluationReason.UNRECOGNIZED))

    def _rule_results(self, user: User, experiment_name: str, select: Callable[[Rule], bool]) -> list[bool | None]:
        """
        Whether the user passes the conditions of each selected rule of the
        experiment, in rule order.
        """
        state = self._store.current()
        spec = state.snapshot.get_config(experiment_name)
        if spec is None:
            return []
        ctx = _EvaluationContext(self._normalize_user(user), state, self._max_depth)
        results = []
        for rule in spec.rules:
            if not select(rule):
                continue
            try:
                results.append(self._evaluate_rule(ctx, rule).boolean_value)
            except _DepthExceeded as ex:
                logger.error("Aborted evaluation of rule %r of %r: %s", rule.id, experiment_name, ex)
                results.append(None)
        return results

    def is_user_overridden_to_experiment(self, user: User, experiment_name: str) -> bool:
        return True in self._rule_results(user, experiment_name, lambda r: "override" in r.id.lower())

    def is_user_allocated_to_experiment(self, user: User, experiment_name: str) -> bool:
        # Failing the layer assignment rule means the layer allocated the user
        # to this experiment.
        results = self._rule_results(user, experiment_name, lambda r: r.id.lower() == "layerassignment")
        return bool(results) and results[0] is False

    def get_experiment_groups(self, experiment_name: str) -> dict[str, dict[str, JSONValue]]:
        """
        The groups of an experiment with their return value and their share of
        the allocation.
        """
        spec = self._store.current().snapshot.get_config(experiment_name)
        if spec is None:
            return {}
        groups = {}
        previous_allocation = 0.0
        for rule in spec.rules:
            percent = 0.0
            if rule.conditions:
                cond = rule.conditions[0]
                target = _as_float(cond.target_value) if not isinstance(cond.target_value, str) else None
                if cond.type.lower() == "user_bucket" and target is not None:
                    percent = (target - previous_allocation) / 1000.0
                    previous_allocation = target
            if rule.group_name is not None:
                groups[rule.group_name] = {"value": json.dumps(rule.return_value), "percent": percent}
        return groups

    def _log_exposure(self, event_name: str, user: User, metadata: dict[str, str], exposures: list[Exposure]):
        if self._exposure_logger is None:
            return
        try:
            self._exposure_logger.log_exposure(event_name, user.copy_for_logging(), metadata, exposures)
        except Exception:
            logger.exception("Error logging %s", event_name)

    def _lookup(self, state: _StoreState, entity: _Entity, name: str) -> Spec | None:
        match entity:
            case "gate":
                return state.snapshot.get_gate(name)
            case "config":
                return state.snapshot.get_config(name)
            case "layer":
                return state.snapshot.get_layer_config(name)

    def _evaluate_top_level(self, entity: _Entity, user: User, name: str) -> ConfigEvaluation:
        start = time.perf_counter()
        state = self._store.current()
        try:
            ctx = _EvaluationContext(self._normalize_user(user), state, self._max_depth)
            e = self._evaluate_named(ctx, entity, name)
            e.secondary_exposures = _clean_exposures(e.secondary_exposures)
            e.undelegated_secondary_exposures = _clean_exposures(e.undelegated_secondary_exposures)
        except _DepthExceeded as ex:
            logger.error("Aborted evaluation of %s %r: %s", entity, name, ex)
            spec = self._lookup(state, entity, name)
            e = ConfigEvaluation(
                json_value=spec.default_value if spec else None,
                evaluation_details=_details(state, EvaluationReason.UNRECOGNIZED),
            )
        except Exception:
            logger.exception("Error evaluating %s %r", entity, name)
            e = ConfigEvaluation(evaluation_details=_details(state, EvaluationReason.DEFAULT))
        reason = e.reason.name if e.reason else ""
        _prom_eval_duration.labels(entity=entity, reason=reason).observe(time.perf_counter() - start)
        return e

    def _evaluate_named(self, ctx: _EvaluationContext, entity: _Entity, name: str) -> ConfigEvaluation:
        found, value = self._get_override(entity, name)
        if found:
            return ConfigEvaluation(
                boolean_value=value if isinstance(value, bool) else False,
                json_value=value,
                evaluation_details=_details(ctx.state, EvaluationReason.LOCAL_OVERRIDE),
            )
        if ctx.state.reason is EvaluationReason.UNINITIALIZED:
            logger.debug("Specs are not loaded, returning uninitialized evaluation for %s %r", entity, name)
            return ConfigEvaluation(evaluation_details=_details(ctx.state, EvaluationReason.UNINITIALIZED))
        spec = self._lookup(ctx.state, entity, name)
        if spec is None:
            logger.debug("Unrecognized %s %r", entity, name)
            return ConfigEvaluation(evaluation_details=_details(ctx.state, EvaluationReason.UNRECOGNIZED))
        return self._evaluate_spec(ctx, spec)

    def _evaluate_spec(self, ctx: _EvaluationContext, spec: Spec) -> ConfigEvaluation:
        """
        Evaluate the rules of the spec in order. The first rule whose
        conditions all pass decides the outcome; later rules are never
        consulted even when the user misses the pass percentage.
        """
        details = _details(ctx.state, ctx.state.reason)
        if not spec.enabled:
            logger.debug("%s is not enabled", spec.name)
            return ConfigEvaluation(
                json_value=spec.default_value,
                rule_id=_DISABLED_RULE,
                evaluation_details=details,
                is_active=spec.is_active,
                id_type=spec.id_type,
            )

        exposures: list[Exposure] = []
        for rule in spec.rules:
            r = self._evaluate_rule(ctx, rule)
            exposures += r.secondary_exposures
            if r.reason is EvaluationReason.UNSUPPORTED:
                return ConfigEvaluation(
                    json_value=spec.default_value,
                    rule_id=rule.id,
                    secondary_exposures=exposures,
                    undelegated_secondary_exposures=list(exposures),
                    evaluation_details=r.evaluation_details,
                    is_active=spec.is_active,
                    id_type=spec.id_type,
                )
            if not r.boolean_value:
                continue

            delegated = self._evaluate_delegate(ctx, rule, exposures)
            if delegated is not None:
                return delegated

            passed = self._passes_percentage(ctx.user, spec, rule)
            return ConfigEvaluation(
                boolean_value=passed,
                json_value=rule.return_value if passed else spec.default_value,
                rule_id=rule.id,
                group_name=rule.group_name,
                secondary_exposures=exposures,
                undelegated_secondary_exposures=list(exposures),
                evaluation_details=details,
                is_experiment_group=rule.is_experiment_group,
                is_active=spec.is_active,
                id_type=spec.id_type,
            )

        return ConfigEvaluation(
            json_value=spec.default_value,
            rule_id=_DEFAULT_RULE,
            group_name="",
            secondary_exposures=exposures,
            undelegated_secondary_exposures=list(exposures),
            evaluation_details=details,
            is_active=spec.is_active,
            id_type=spec.id_type,
        )

    @staticmethod
    def _passes_percentage(user: User, spec: Spec, rule: Rule) -> bool:
        if rule.pass_percentage <= 0:
            return False
        if rule.pass_percentage >= 100:
            return True
        salt = rule.salt if rule.salt is not None else rule.id
        unit_id = user.get_id(rule.id_type) or ""
        return _hash_to_bucket(f"{spec.salt}.{salt}.{unit_id}") % 10000 < int(rule.pass_percentage * 100)

    def _evaluate_delegate(self, ctx: _EvaluationContext, rule: Rule, exposures: list[Exposure]) -> ConfigEvaluation | None:
        if rule.config_delegate is None:
            return None
        config = ctx.state.snapshot.get_config(rule.config_delegate)
        if config is None:
            return None
        d = self._evaluate_spec(ctx.nested(), config)
        return ConfigEvaluation(
            boolean_value=d.boolean_value,
            json_value=d.json_value,
            rule_id=d.rule_id,
            group_name=d.group_name,
            secondary_exposures=exposures + d.secondary_exposures,
            undelegated_secondary_exposures=list(exposures),
            explicit_parameters=config.explicit_parameters or [],
            config_delegate=rule.config_delegate,
            evaluation_details=d.evaluation_details,
            is_experiment_group=d.is_experiment_group,
            is_active=config.is_active,
            id_type=config.id_type,
        )

    def _evaluate_rule(self, ctx: _EvaluationContext, rule: Rule) -> ConfigEvaluation:
        """
        All conditions are evaluated so that every nested gate check leaves its
        exposure, except that an escaping condition ends the rule at once.
        """
        passed = True
        exposures: list[Exposure] = []
        for condition in rule.conditions:
            c = self._evaluate_condition(ctx, condition)
            exposures += c.secondary_exposures
            if c.escape_to_caller:
                return ConfigEvaluation(
                    rule_id=rule.id,
                    secondary_exposures=exposures,
                    evaluation_details=_details(ctx.state, EvaluationReason.UNSUPPORTED),
                )
            if not c.passed:
                passed = False
        return ConfigEvaluation(
            boolean_value=passed,
            json_value=rule.return_value,
            rule_id=rule.id,
            group_name=rule.group_name,
            secondary_exposures=exposures,
            is_experiment_group=rule.is_experiment_group,
        )

    def _unsupported(self, what: str) -> _ConditionResult:
        logger.error("Unsupported %s, condition fails", what)
        return _ConditionResult(False, escape_to_caller=self._escape_unsupported)

    def _evaluate_condition(self, ctx: _EvaluationContext, condition: Condition) -> _ConditionResult:
        try:
            return self._evaluate_condition_impl(ctx, condition)
        except _DepthExceeded:
            raise
        except Exception:
            logger.exception("Error evaluating %s condition", condition.type)
            return _ConditionResult(False)

    def _evaluate_condition_impl(self, ctx: _EvaluationContext, condition: Condition) -> _ConditionResult:
        user = ctx.user
        field = condition.field or ""
        value: JSONValue = None
        match condition.type.lower():
            case "public":
                return _ConditionResult(True)
            case ("pass_gate" | "fail_gate") as kind:
                name = _as_string(condition.target_value) or ""
                nested = self._evaluate_named(ctx.nested(), "gate", name)
                exposure = {
                    "gate": name,
                    "gateValue": "true" if nested.boolean_value else "false",
                    "ruleID": nested.rule_id,
                }
                passed = nested.boolean_value if kind == "pass_gate" else not nested.boolean_value
                return _ConditionResult(
                    passed,
                    value=nested.boolean_value,
                    secondary_exposures=nested.secondary_exposures + [exposure],
                )
            case "ip_based":
                value = _get_from_user(user, field)
                if value is None and not self._disable_ip_resolution and self._country_lookup is not None:
                    ip = _as_string(_get_from_user(user, "ip"))
                    value = self._country_lookup(ip) if ip else None
            case "ua_based":
                value = _get_from_user(user, field)
                if value is None:
                    value = self._get_from_user_agent(user, field)
            case "user_field":
                value = _get_from_user(user, field)
            case "current_time":
                value = str(_now_millis())
            case "environment_field":
                value = _get_from_environment(user, field)
            case "user_bucket":
                salt = _as_string(condition.additional_values.get("salt")) or ""
                unit_id = user.get_id(condition.id_type) or ""
                value = _hash_to_bucket(f"{salt}.{unit_id}") % 1000
            case "unit_id":
                value = user.get_id(condition.id_type)
            case "target_app":
                if ctx.client_sdk_key is not None:
                    value = ctx.state.snapshot.get_app_id_for_sdk_key(ctx.client_sdk_key)
                else:
                    value = ctx.state.snapshot.app_id
            case _:
                return self._unsupported(f"condition type {condition.type!r}")

        passed = self._evaluate_operator(condition.operator or "", value, condition.target_value)
        if passed is None:
            return self._unsupported(f"operator {condition.operator!r}")
        return _ConditionResult(passed, value=value)

    def _evaluate_operator(self, op: str, value: JSONValue, target: JSONValue) -> bool | None:
        """
        Apply the operator to the extracted value and the condition target.
        Returns None for unknown operators. Operands that can't be coerced make
        the comparison false.
        """
        if op in _numeric_ops:
            a, b = _as_float(value), _as_float(target)
            if a is None or b is None:
                return False
            return _numeric_ops[op](a, b)

        if op in _version_ops:
            a, b = _as_string(value), _as_string(target)
            if a is None or b is None:
                return False
            try:
                return _version_ops[op](_version_compare(_strip_prerelease(a), _strip_prerelease(b)))
            except ValueError:
                logger.warning("Unparseable version in %r %s %r", a, op, b)
                return False

        if op in _string_array_ops:
            compare, negate = _string_array_ops[op]
            return _match_string_in_array(value, target, compare) != negate

        if op in _date_ops:
            a, b = _as_epoch_millis(value), _as_epoch_millis(target)
            if a is None or b is None:
                return False
            return _date_ops[op](a, b)

        match op:
            case "str_matches":
                pattern, s = _as_string(target), _as_string(value)
                if pattern is None or s is None:
                    return False
                try:
                    return re.search(pattern, s) is not None
                except re.error as e:
                    logger.warning("Invalid regex %r: %s", pattern, e)
                    return False
            case "eq":
                return _values_equal(value, target)
            case "neq":
                return not _values_equal(value, target)
            case "array_contains_any" | "array_contains_none":
                if not isinstance(value, list) or not isinstance(target, list):
                    return False
                found = any(_array_contains(value, t) for t in target)
                return found if op == "array_contains_any" else not found
            case "array_contains_all" | "not_array_contains_all":
                if not isinstance(value, list) or target is None:
                    return False
                targets = target if isinstance(target, list) else [target]
                contains_all = all(_array_contains(value, t) for t in targets)
                return contains_all if op == "array_contains_all" else not contains_all
            case "in_segment_list" | "not_in_segment_list":
                id_list = self._store.get_id_list(_as_string(target) or "")
                s = _as_string(value)
                if id_list is None or s is None:
                    return False
                contains = id_list.has_member(_segment_hash_prefix(s))
                return contains if op == "in_segment_list" else not contains
            case _:
                return None

    def _get_from_user_agent(self, user: User, field: str) -> str | None:
        ua = _as_string(_get_from_user(user, "userAgent"))
        if not ua or self._user_agent_parser is None:
            return None
        info = self._user_agent_parser(ua)
        if info is None:
            return None
        match field.lower():
            case "os_name" | "osname":
                return info.os_name
            case "os_version" | "osversion":
                return _join_version(info.os_major, info.os_minor, info.os_patch)
            case "browser_name" | "browsername":
                return info.browser_name
            case "browser_version" | "browserversion":
                return _join_version(info.browser_major, info.browser_minor, info.browser_patch)
            case _:
                return None

    # Client initialize response

    def get_client_initialize_response(
        self,
        user: User,
        hash: HashAlgo = "sha256",
        client_sdk_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Evaluate every gate, config and layer for the user in the shape client
        SDKs bootstrap from. Names are disclosed hashed with the given
        algorithm. Returns an empty dict if specs are not loaded.
        """
        state = self._store.current()
        if state.reason is EvaluationReason.UNINITIALIZED:
            logger.error("Client initialize response requested before specs were loaded")
            return {}
        try:
            ctx = _EvaluationContext(self._normalize_user(user), state, self._max_depth, client_sdk_key)

            def _entries(specs: dict[str, Spec]) -> dict[str, dict[str, Any]]:
                res = {}
                for name, spec in specs.items():
                    try:
                        entry = self._client_config(ctx, name, spec, hash)
                    except Exception:
                        logger.exception("Skipping %r in client initialize response", name)
                        continue
                    if entry is not None:
                        res[entry["name"]] = entry
                return res

            evaluated_keys: dict[str, Any] = {}
            if user.user_id is not None:
                evaluated_keys["userID"] = user.user_id
            if user.custom_ids:
                evaluated_keys["customIDs"] = user.custom_ids

            return {
                "feature_gates": _entries(state.snapshot.gates),
                "dynamic_configs": _entries(state.snapshot.configs),
                "layer_configs": _entries(state.snapshot.layer_configs),
                "sdkParams": {},
                "has_updates": True,
                # Zero so this doesn't interfere with client polling.
                "time": 0,
                "generator": "flageval",
                "evaluated_keys": evaluated_keys,
                "hash_used": hash,
            }
        except Exception:
            logger.exception("Error building client initialize response")
            return {}

    def _spec_is_for_target_app(self, ctx: _EvaluationContext, spec: Spec) -> bool:
        if ctx.client_sdk_key is None:
            return True
        app_id = ctx.state.snapshot.get_app_id_for_sdk_key(ctx.client_sdk_key)
        if app_id is None:
            return True
        if spec.target_app_ids is None:
            return False
        return app_id in spec.target_app_ids

    def _client_config(self, ctx: _EvaluationContext, name: str, spec: Spec, hash: HashAlgo) -> dict[str, Any] | None:
        if spec.entity in ("segment", "holdout"):
            return None
        if not self._spec_is_for_target_app(ctx, spec):
            return None
        try:
            e = self._evaluate_spec(ctx, spec)
        except _DepthExceeded as ex:
            logger.error("Skipping %r in client initialize response: %s", name, ex)
            return None

        result: dict[str, Any] = {
            "name": hash_name(name, hash),
            "value": False,
            "rule_id": e.rule_id,
            "secondary_exposures": _dedupe_exposures(e.secondary_exposures),
        }
        if spec.type == "feature_gate":
            result["value"] = e.boolean_value
            return result
        if spec.type != "dynamic_config":
            return None

        result["value"] = e.json_value if e.json_value is not None else {}
        result["group"] = e.rule_id
        result["is_device_based"] = spec.id_type.lower() == "stableid"
        match spec.entity:
            case "experiment":
                result["is_user_in_experiment"] = e.is_experiment_group
                result["is_experiment_active"] = spec.is_active
                if spec.has_shared_params:
                    result["is_in_layer"] = True
                    result["explicit_parameters"] = spec.explicit_parameters or []
                    layer_name = ctx.state.snapshot.get_layer_name_for_experiment(name)
                    layer = ctx.state.snapshot.get_layer_config(layer_name) if layer_name else None
                    if layer is not None and isinstance(layer.default_value, dict) and isinstance(result["value"], dict):
                        result["value"] = {**layer.default_value, **result["value"]}
            case "layer":
                result["explicit_parameters"] = spec.explicit_parameters or []
                delegate = ctx.state.snapshot.get_config(e.config_delegate) if e.config_delegate else None
                if delegate is not None:
                    d = self._evaluate_spec(ctx, delegate)
                    result["allocated_experiment_name"] = hash_name(delegate.name, hash)
                    result["is_user_in_experiment"] = d.is_experiment_group
                    result["is_experiment_active"] = delegate.is_active
                    result["explicit_parameters"] = delegate.explicit_parameters or []
                    result["secondary_exposures"] = _dedupe_exposures(d.secondary_exposures)
                result["undelegated_secondary_exposures"] = _dedupe_exposures(e.undelegated_secondary_exposures)
        return result
