from __future__ import annotations
import os
import json
import math
import re
import time
import logging
import threading
import jsonschema
from collections.abc import Iterable, Mapping
from enum import IntEnum
from hashlib import sha256
from typing import Any, Literal, TypeAlias

from prometheus_client import Counter, Histogram
from werkzeug.exceptions import HTTPException, InternalServerError, MethodNotAllowed, NotFound
from werkzeug.wrappers import Request, Response


logger = logging.getLogger(__name__)

Value: TypeAlias = bool | str | int | float
DictFlags: TypeAlias = dict[str, Any]
ComparatorClass: TypeAlias = Literal["list", "numeric", "plain"]

CONFIG_JSON_NAME = "config_v6.json"
LEGACY_CONFIG_JSON_NAME = "config_v5.json"

_path_prefix = "/configuration-files/"


class SettingType(IntEnum):
    BOOL = 0
    STRING = 1
    INT = 2
    FLOAT = 3
    INVALID = -1


class Comparator(IntEnum):
    ONE_OF = 0
    NOT_ONE_OF = 1
    CONTAINS_ANY_OF = 2
    NOT_CONTAINS_ANY_OF = 3
    ONE_OF_SEMVER = 4
    NOT_ONE_OF_SEMVER = 5
    LESS_SEMVER = 6
    LESS_EQ_SEMVER = 7
    GREATER_SEMVER = 8
    GREATER_EQ_SEMVER = 9
    EQ_NUM = 10
    NOT_EQ_NUM = 11
    LESS_NUM = 12
    LESS_EQ_NUM = 13
    GREATER_NUM = 14
    GREATER_EQ_NUM = 15
    ONE_OF_HASHED = 16
    NOT_ONE_OF_HASHED = 17
    BEFORE_DATETIME = 18
    AFTER_DATETIME = 19
    EQ_HASHED = 20
    NOT_EQ_HASHED = 21
    STARTS_WITH_ANY_OF_HASHED = 22
    NOT_STARTS_WITH_ANY_OF_HASHED = 23
    ENDS_WITH_ANY_OF_HASHED = 24
    NOT_ENDS_WITH_ANY_OF_HASHED = 25
    ARRAY_CONTAINS_ANY_OF_HASHED = 26
    ARRAY_NOT_CONTAINS_ANY_OF_HASHED = 27
    EQ = 28
    NOT_EQ = 29
    STARTS_WITH_ANY_OF = 30
    NOT_STARTS_WITH_ANY_OF = 31
    ENDS_WITH_ANY_OF = 32
    NOT_ENDS_WITH_ANY_OF = 33
    ARRAY_CONTAINS_ANY_OF = 34
    ARRAY_NOT_CONTAINS_ANY_OF = 35


# Indexed by comparator number.
_comparator_strings = [
    "IS ONE OF",
    "IS NOT ONE OF",
    "CONTAINS ANY OF",
    "NOT CONTAINS ANY OF",
    "IS ONE OF",
    "IS NOT ONE OF",
    "<",
    "<=",
    ">",
    ">=",
    "=",
    "!=",
    "<",
    "<=",
    ">",
    ">=",
    "IS ONE OF",
    "IS NOT ONE OF",
    "BEFORE",
    "AFTER",
    "EQUALS",
    "NOT EQUALS",
    "STARTS WITH ANY OF",
    "NOT STARTS WITH ANY OF",
    "ENDS WITH ANY OF",
    "NOT ENDS WITH ANY OF",
    "ARRAY CONTAINS ANY OF",
    "ARRAY NOT CONTAINS ANY OF",
    "EQUALS",
    "NOT EQUALS",
    "STARTS WITH ANY OF",
    "NOT STARTS WITH ANY OF",
    "ENDS WITH ANY OF",
    "NOT ENDS WITH ANY OF",
    "ARRAY CONTAINS ANY OF",
    "ARRAY NOT CONTAINS ANY OF",
]

_list_comparators = frozenset(
    {
        Comparator.ONE_OF,
        Comparator.NOT_ONE_OF,
        Comparator.CONTAINS_ANY_OF,
        Comparator.NOT_CONTAINS_ANY_OF,
        Comparator.ONE_OF_SEMVER,
        Comparator.NOT_ONE_OF_SEMVER,
        Comparator.ONE_OF_HASHED,
        Comparator.NOT_ONE_OF_HASHED,
        Comparator.STARTS_WITH_ANY_OF,
        Comparator.NOT_STARTS_WITH_ANY_OF,
        Comparator.STARTS_WITH_ANY_OF_HASHED,
        Comparator.NOT_STARTS_WITH_ANY_OF_HASHED,
        Comparator.ENDS_WITH_ANY_OF,
        Comparator.NOT_ENDS_WITH_ANY_OF,
        Comparator.ENDS_WITH_ANY_OF_HASHED,
        Comparator.NOT_ENDS_WITH_ANY_OF_HASHED,
        Comparator.ARRAY_CONTAINS_ANY_OF,
        Comparator.ARRAY_NOT_CONTAINS_ANY_OF,
        Comparator.ARRAY_CONTAINS_ANY_OF_HASHED,
        Comparator.ARRAY_NOT_CONTAINS_ANY_OF_HASHED,
    }
)

_numeric_comparators = frozenset(
    {
        Comparator.EQ_NUM,
        Comparator.NOT_EQ_NUM,
        Comparator.LESS_NUM,
        Comparator.LESS_EQ_NUM,
        Comparator.GREATER_NUM,
        Comparator.GREATER_EQ_NUM,
    }
)

# The flat rule format predates everything after the sensitive one-of
# operators.
_max_legacy_comparator = Comparator.NOT_ONE_OF_HASHED


def comparator_string(op: int) -> str:
    """
    Return the display string of the comparator or an empty string if op is
    not a known comparator.
    """
    if isinstance(op, bool) or not isinstance(op, int) or op < 0 or op >= len(_comparator_strings):
        return ""
    return _comparator_strings[op]


def comparator_class(op: int) -> ComparatorClass:
    """
    Return which value shape a condition using op carries: a list of strings,
    a number or a single opaque string.
    """
    if op in _list_comparators:
        return "list"
    if op in _numeric_comparators:
        return "numeric"
    return "plain"


_int64_min = -(1 << 63)
_int64_max = (1 << 63) - 1


def _is_utf8(s: str) -> bool:
    # Lone surrogates are valid in str but can't be written out as UTF-8.
    try:
        s.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def setting_type_of(v: Any) -> SettingType:
    """
    Classify the given value into one of the supported setting types.

    bool must be tested before int since bool is a subclass of int. Integers
    that don't fit in 64 bits and non-finite floats can't be represented by
    evaluators and are therefore invalid, as are strings that aren't valid
    UTF-8.
    """
    if isinstance(v, bool):
        return SettingType.BOOL
    if isinstance(v, str):
        if _is_utf8(v):
            return SettingType.STRING
        return SettingType.INVALID
    if isinstance(v, int):
        if _int64_min <= v <= _int64_max:
            return SettingType.INT
        return SettingType.INVALID
    if isinstance(v, float):
        if math.isfinite(v):
            return SettingType.FLOAT
        return SettingType.INVALID
    return SettingType.INVALID


class CompileError(ValueError):
    """
    Raised when a flag definition can't be compiled. The message names the flag,
    the offending rule (if any) and the aspect that failed.
    """

    def __init__(self, flag_key: str, msg: str, rule_index: int | None = None, field: str = ""):
        super().__init__(f"invalid flag {flag_key!r}: {msg}")
        self.flag_key = flag_key
        self.rule_index = rule_index
        self.field = field


# Wire model


class SettingValue:
    """
    Tagged setting value. Exactly one of the wire fields b, s, i, d is emitted,
    chosen by the type.
    """

    __slots__ = ("type", "value")
    type: SettingType
    value: Value

    _tags = {
        SettingType.BOOL: "b",
        SettingType.STRING: "s",
        SettingType.INT: "i",
        SettingType.FLOAT: "d",
    }

    def to_wire(self) -> dict[str, Value]:
        return {self._tags[self.type]: self.value}


def encode_value(v: Value, t: SettingType | None = None) -> SettingValue:
    """
    Wrap the value into its tagged wire representation. The type is classified
    from the value when not given.
    """
    if t is None:
        t = setting_type_of(v)
    if t == SettingType.INVALID:
        raise ValueError(f"cannot encode value {v!r} of type {type(v).__name__}")
    sv = SettingValue()
    sv.type = t
    sv.value = v
    return sv


class UserCondition:
    __slots__ = ("comparison_attribute", "comparator", "string_value", "double_value", "string_array_value")
    comparison_attribute: str
    comparator: Comparator
    string_value: str | None
    double_value: float | None
    string_array_value: list[str] | None

    def to_wire(self) -> dict[str, Any]:
        d: dict[str, Any] = {"a": self.comparison_attribute, "c": int(self.comparator)}
        if self.string_value is not None:
            d["s"] = self.string_value
        if self.double_value is not None:
            d["d"] = self.double_value
        if self.string_array_value is not None:
            d["l"] = list(self.string_array_value)
        return d


class SegmentCondition:
    """
    Condition on membership of a segment. Never produced by the compiler, only
    carried so documents can describe it.
    """

    __slots__ = ("index", "comparator")
    index: int
    comparator: int

    def to_wire(self) -> dict[str, Any]:
        return {"s": self.index, "c": self.comparator}


class PrerequisiteFlagCondition:
    """
    Condition on the evaluated value of another flag. Never produced by the
    compiler, only carried so documents can describe it.
    """

    __slots__ = ("flag_key", "comparator", "value")
    flag_key: str
    comparator: int
    value: SettingValue

    def to_wire(self) -> dict[str, Any]:
        return {"f": self.flag_key, "c": self.comparator, "v": self.value.to_wire()}


Condition: TypeAlias = UserCondition | SegmentCondition | PrerequisiteFlagCondition


def _condition_to_wire(c: Condition) -> dict[str, Any]:
    match c:
        case UserCondition():
            return {"u": c.to_wire()}
        case SegmentCondition():
            return {"s": c.to_wire()}
        case PrerequisiteFlagCondition():
            return {"p": c.to_wire()}
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover


class ServedValue:
    __slots__ = ("value", "variation_id")
    value: SettingValue
    variation_id: str

    def to_wire(self) -> dict[str, Any]:
        return {"v": self.value.to_wire(), "i": self.variation_id}


class PercentageOption:
    __slots__ = ("value", "percentage", "variation_id")
    value: SettingValue
    percentage: int
    variation_id: str

    def to_wire(self) -> dict[str, Any]:
        return {"v": self.value.to_wire(), "p": self.percentage, "i": self.variation_id}


class TargetingRule:
    """
    An AND group of conditions and its consequence, which is either a served
    value or a list of percentage options, never both.
    """

    __slots__ = ("conditions", "then")
    conditions: list[Condition]
    then: ServedValue | list[PercentageOption]

    def to_wire(self) -> dict[str, Any]:
        d: dict[str, Any] = {"c": [_condition_to_wire(c) for c in self.conditions]}
        match self.then:
            case ServedValue():
                d["s"] = self.then.to_wire()
            case list():
                d["p"] = [o.to_wire() for o in self.then]
            case _:  # pragma: no cover
                assert False, "unreachable"  # pragma: no cover
        return d


class Setting:
    __slots__ = ("key", "type", "value", "variation_id", "targeting_rules")
    key: str
    type: SettingType
    value: SettingValue
    variation_id: str
    targeting_rules: list[TargetingRule]

    def to_wire(self) -> dict[str, Any]:
        return {
            "t": int(self.type),
            "v": self.value.to_wire(),
            "i": self.variation_id,
            "r": [r.to_wire() for r in self.targeting_rules],
        }


class ConfigurationDocument:
    __slots__ = ("settings", "segments", "preferences")
    settings: dict[str, Setting]
    segments: list[Any]
    preferences: dict[str, Any] | None

    def to_wire(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "f": {k: s.to_wire() for k, s in self.settings.items()},
            "s": list(self.segments),
        }
        if self.preferences is not None:
            d["p"] = self.preferences
        return d

    def to_bytes(self) -> bytes:
        return _canonical_json(self.to_wire())


def _canonical_json(obj: Any) -> bytes:
    # Sorted keys and no whitespace so the same flags always produce the same
    # bytes and therefore the same ETag.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")


# Declarative input


class Rule:
    """
    A single targeting rule as authored: if the user attribute compares to the
    comparison value using the comparator, the flag evaluates to value.
    """

    __slots__ = ("comparison_attribute", "comparator", "comparison_value", "value")

    def __init__(self, comparison_attribute: str, comparator: int, comparison_value: str, value: Value):
        self.comparison_attribute = comparison_attribute
        self.comparator = comparator
        self.comparison_value = comparison_value
        self.value = value

    def __repr__(self) -> str:
        return f"({self.comparison_attribute!r} {comparator_string(self.comparator) or self.comparator} {self.comparison_value!r})"


class Flag:
    """
    A flag as authored: a default value and rules checked in order. The first
    satisfied rule decides the value, otherwise the default is used. Rule
    values must have the same type as the default.
    """

    __slots__ = ("default", "rules")

    def __init__(self, default: Value, rules: Iterable[Rule] = ()):
        self.default = default
        self.rules = list(rules)


def merge_flag_sets(*flag_sets: Mapping[str, Flag]) -> dict[str, Flag]:
    """
    Merge the given flag sets into a single one. Order is not important. Flag
    keys must be unique across all the sets.
    """
    merged: dict[str, Flag] = {}
    for flags in flag_sets:
        intersection = merged.keys() & flags.keys()
        if intersection:
            raise ValueError(f"Duplicate flag keys: {intersection}")
        merged.update(flags)
    return merged


with open(os.path.join(os.path.dirname(__file__), "flags_schema.json")) as f:
    _flags_schema = json.load(f)


def flags_from_dict(d: DictFlags) -> dict[str, Flag]:
    """
    Build flags from their dictionary form (e.g. loaded from JSON or YAML). The
    shape is validated against the flags schema, the semantics are validated
    when the flags are compiled.
    """
    jsonschema.validate(d, _flags_schema)
    flags = {}
    for key, f in d.items():
        rules = []
        for r in f.get("rules", []):
            op = r["comparator"]
            if isinstance(op, str):
                op = Comparator[op]
            rules.append(Rule(r["attribute"], op, r["comparison_value"], r["value"]))
        flags[key] = Flag(f["default"], rules)
    return flags


# Compilation


_decimal_re = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$", re.ASCII)


def build_user_condition(comparator: int, comparison_value: str, attribute: str) -> UserCondition:
    """
    Build the user condition for the comparator, populating the value field
    that matches the comparator's class.

    List values are split on commas without trimming the items. Numeric values
    that don't parse are left unset instead of failing.
    """
    if comparator_string(comparator) == "":
        raise ValueError(f"invalid comparator value {comparator!r}")
    c = UserCondition()
    c.comparison_attribute = attribute
    c.comparator = Comparator(comparator)
    c.string_value = None
    c.double_value = None
    c.string_array_value = None
    match comparator_class(comparator):
        case "list":
            c.string_array_value = comparison_value.split(",")
        case "numeric":
            text = comparison_value.strip()
            # float() also takes underscores and non-ASCII digits, evaluators
            # only take plain decimals.
            if _decimal_re.match(text):
                n = float(text)
                if math.isfinite(n):
                    c.double_value = n
        case "plain":
            c.string_value = comparison_value
        case _:  # pragma: no cover
            assert False, "unreachable"  # pragma: no cover
    return c


class _ValidatedRule:
    __slots__ = ("rule", "variation_id")
    rule: Rule
    variation_id: str


class _ValidatedFlag:
    """
    A flag that passed all checks, with variation IDs assigned. All wire formats
    are lowered from this form.
    """

    __slots__ = ("key", "type", "default", "variation_id", "rules")
    key: str
    type: SettingType
    default: Value
    variation_id: str
    rules: list[_ValidatedRule]


def _validate_flag(key: str, flag: Flag) -> _ValidatedFlag:
    if not _is_utf8(key):
        raise CompileError(key, "flag key is not valid UTF-8", field="key")
    ft = setting_type_of(flag.default)
    if ft == SettingType.INVALID:
        raise CompileError(key, f"invalid type {type(flag.default).__name__} for default value {flag.default!r}", field="default")
    vf = _ValidatedFlag()
    vf.key = key
    vf.type = ft
    vf.default = flag.default
    vf.variation_id = f"v_{key}"
    vf.rules = []
    for i, rule in enumerate(flag.rules):
        if comparator_string(rule.comparator) == "":
            raise CompileError(key, f"rule {i}: invalid comparator value {rule.comparator!r}", i, "comparator")
        if not isinstance(rule.comparison_attribute, str) or not rule.comparison_attribute:
            raise CompileError(key, f"rule {i}: empty comparison attribute", i, "comparison_attribute")
        if not _is_utf8(rule.comparison_attribute):
            raise CompileError(key, f"rule {i}: comparison attribute is not valid UTF-8", i, "comparison_attribute")
        if not isinstance(rule.comparison_value, str) or not rule.comparison_value:
            raise CompileError(key, f"rule {i}: empty comparison value", i, "comparison_value")
        if not _is_utf8(rule.comparison_value):
            raise CompileError(key, f"rule {i}: comparison value is not valid UTF-8", i, "comparison_value")
        if setting_type_of(rule.value) != ft:
            raise CompileError(
                key,
                f"rule {i} {rule!r}: value {rule.value!r} has inconsistent type {type(rule.value).__name__} with flag default value {flag.default!r}",
                i,
                "value",
            )
        vr = _ValidatedRule()
        vr.rule = rule
        # The default's ID never contains a digit before the underscore so
        # none of these can collide with it.
        vr.variation_id = f"v{i}_{key}"
        vf.rules.append(vr)
    return vf


def _lower_setting(vf: _ValidatedFlag) -> Setting:
    s = Setting()
    s.key = vf.key
    s.type = vf.type
    s.value = encode_value(vf.default, vf.type)
    s.variation_id = vf.variation_id
    s.targeting_rules = []
    for vr in vf.rules:
        sv = ServedValue()
        sv.value = encode_value(vr.rule.value, vf.type)
        sv.variation_id = vr.variation_id
        tr = TargetingRule()
        tr.conditions = [build_user_condition(vr.rule.comparator, vr.rule.comparison_value, vr.rule.comparison_attribute)]
        tr.then = sv
        s.targeting_rules.append(tr)
    return s


def _lower_legacy_entry(vf: _ValidatedFlag) -> dict[str, Any] | None:
    """
    Lower the flag into the flat rule format. Returns None if any of its rules
    uses a comparator the flat format doesn't know.
    """
    rules = []
    for vr in vf.rules:
        if vr.rule.comparator > _max_legacy_comparator:
            return None
        rules.append(
            {
                "i": vr.variation_id,
                "v": vr.rule.value,
                "a": vr.rule.comparison_attribute,
                "c": vr.rule.comparison_value,
                "t": int(vr.rule.comparator),
            }
        )
    return {"i": vf.variation_id, "v": vf.default, "t": int(vf.type), "r": rules, "p": []}


def compile_setting(key: str, flag: Flag) -> Setting:
    """
    Compile the flag into its wire setting. Raises CompileError on the first
    problem found, checking rules in order.
    """
    return _lower_setting(_validate_flag(key, flag))


def compile_document(flags: Mapping[str, Flag]) -> ConfigurationDocument:
    """
    Compile all flags into a configuration document. Any invalid flag fails the
    whole document.
    """
    return _lower_document([_validate_flag(key, flag) for key, flag in flags.items()])


def _lower_document(validated: list[_ValidatedFlag]) -> ConfigurationDocument:
    doc = ConfigurationDocument()
    doc.settings = {vf.key: _lower_setting(vf) for vf in validated}
    doc.segments = []
    doc.preferences = None
    return doc


# Registry


class PublishedDocument:
    """
    Serialized document and its fingerprint. Instances are never mutated after
    publishing so readers can hold on to them without locking.
    """

    __slots__ = ("content", "etag")
    content: bytes
    etag: str


def _published(content: bytes) -> PublishedDocument:
    pd = PublishedDocument()
    pd.content = content
    pd.etag = f'"{sha256(content).hexdigest()}"'
    return pd


_prom_publish_duration = Histogram(
    "flagwire_publish_seconds",
    "Flag set compilation and publishing duration in seconds",
    buckets=[1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["outcome"],
)


class Registry:
    """
    Current documents per distribution key. Publishing replaces all documents
    of a key at once. The registry is thread-safe.
    """

    def __init__(self, legacy: bool = True):
        self._mu = threading.Lock()
        # None marks a key that is expected but has nothing published yet.
        self._entries: dict[str, dict[str, PublishedDocument] | None] = {}
        self._legacy = legacy

    def reserve(self, key: str):
        """
        Mark the key as expected to be published. Until it is, requests for it
        are answered with an internal error instead of not found.
        """
        if not key:
            raise ValueError("empty distribution key")
        with self._mu:
            self._entries.setdefault(key, None)

    def publish(self, key: str, flags: Mapping[str, Flag]):
        """
        Compile the flags and make them the current documents for the key. If
        any flag fails to compile, nothing changes.
        """
        if not key:
            raise ValueError("empty distribution key")
        start = time.perf_counter()
        try:
            documents = self._build(flags)
        except Exception:
            _prom_publish_duration.labels(outcome="error").observe(time.perf_counter() - start)
            raise
        with self._mu:
            self._entries[key] = documents
        _prom_publish_duration.labels(outcome="ok").observe(time.perf_counter() - start)
        logger.info("Published %d flags for distribution key %s", len(flags), key)

    def _build(self, flags: Mapping[str, Flag]) -> dict[str, PublishedDocument]:
        validated = [_validate_flag(key, flag) for key, flag in flags.items()]
        documents = {CONFIG_JSON_NAME: _published(_lower_document(validated).to_bytes())}

        if self._legacy:
            entries = {vf.key: _lower_legacy_entry(vf) for vf in validated}
            if all(e is not None for e in entries.values()):
                documents[LEGACY_CONFIG_JSON_NAME] = _published(_canonical_json({"f": entries}))
            else:
                logger.debug("Flag set uses comparators unknown to %s, not publishing it", LEGACY_CONFIG_JSON_NAME)

        return documents

    def is_known(self, key: str) -> bool:
        with self._mu:
            return key in self._entries

    def lookup(self, key: str, name: str = CONFIG_JSON_NAME) -> PublishedDocument | None:
        """
        Return the current document with the given name for the key, or None if
        there is none.
        """
        with self._mu:
            documents = self._entries.get(key)
        if documents is None:
            return None
        return documents.get(name)


# HTTP


_prom_requests = Counter(
    "flagwire_requests_total",
    "Configuration document requests by response status",
    labelnames=["status"],
)


class Handler:
    """
    WSGI application serving configuration documents at
    /configuration-files/<distribution key>/<document name>. Each handler owns
    its registry so any number of them can live in one process. The handler is
    thread-safe.
    """

    def __init__(self, distribution_keys: Iterable[str] = (), legacy: bool = True):
        self.registry = Registry(legacy=legacy)
        self._document_names = (CONFIG_JSON_NAME, LEGACY_CONFIG_JSON_NAME) if legacy else (CONFIG_JSON_NAME,)
        for key in distribution_keys:
            self.registry.reserve(key)

    def set_flags(self, key: str, flags: Mapping[str, Flag]):
        """
        Set or replace the flags served for the distribution key. set_flags is
        thread-safe.
        """
        self.registry.publish(key, flags)

    def set_flags_from_dict(self, key: str, d: DictFlags):
        self.registry.publish(key, flags_from_dict(d))

    def _split_path(self, path: str) -> tuple[str, str] | None:
        if not path.startswith(_path_prefix):
            return None
        # Distribution keys may themselves contain slashes.
        key, _, name = path[len(_path_prefix) :].rpartition("/")
        if not key or name not in self._document_names:
            return None
        return key, name

    def dispatch(self, request: Request) -> Response:
        if request.method != "GET":
            raise MethodNotAllowed(valid_methods=["GET"])
        parts = self._split_path(request.path)
        if parts is None:
            raise NotFound()
        key, name = parts
        if not self.registry.is_known(key):
            raise NotFound()
        doc = self.registry.lookup(key, name)
        if doc is None:
            if self.registry.lookup(key) is not None:
                # Published, but this flag set has no document in that format.
                raise NotFound()
            logger.error("No flags published for distribution key %s", key)
            raise InternalServerError("no flags published for this distribution key")
        if request.headers.get("If-None-Match") == doc.etag:
            logger.debug("Document %s for %s not modified", name, key)
            return Response(status=304, headers={"ETag": doc.etag})
        return Response(doc.content, status=200, mimetype="application/json", headers={"ETag": doc.etag})

    def __call__(self, environ, start_response):
        request = Request(environ)
        try:
            response = self.dispatch(request)
        except HTTPException as e:
            response = e.get_response(environ)
        _prom_requests.labels(status=str(response.status_code)).inc()
        return response(environ, start_response)
