import json
import threading
import unittest
from hashlib import sha256

from werkzeug.test import Client

from src.flagwire import (
    CONFIG_JSON_NAME,
    LEGACY_CONFIG_JSON_NAME,
    CompileError,
    Comparator,
    Flag,
    Handler,
    Registry,
    Rule,
)


_key = "aBcDeFgHiJkLmNoPqRsTuV/wXyZ0123456789abcd"
_path = f"/configuration-files/{_key}/{CONFIG_JSON_NAME}"
_legacy_path = f"/configuration-files/{_key}/{LEGACY_CONFIG_JSON_NAME}"


def _simple_flags():
    return {
        "intflag": Flag(99),
        "floatflag": Flag(100.0),
        "stringflag": Flag("s"),
        "boolflag": Flag(True),
    }


class TestHandler(unittest.TestCase):
    def test_simple(self):
        h = Handler()
        h.set_flags(_key, _simple_flags())
        resp = Client(h).get(_path)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.mimetype, "application/json")
        doc = json.loads(resp.data)
        self.assertEqual(doc["s"], [])
        self.assertEqual(doc["f"]["intflag"]["v"], {"i": 99})
        self.assertEqual(doc["f"]["intflag"]["t"], 2)
        self.assertEqual(doc["f"]["floatflag"]["v"], {"d": 100.0})
        self.assertIsInstance(doc["f"]["floatflag"]["v"]["d"], float)
        self.assertEqual(doc["f"]["floatflag"]["t"], 3)
        self.assertEqual(doc["f"]["stringflag"]["v"], {"s": "s"})
        self.assertEqual(doc["f"]["stringflag"]["t"], 1)
        self.assertEqual(doc["f"]["boolflag"]["v"], {"b": True})
        self.assertEqual(doc["f"]["boolflag"]["t"], 0)
        self.assertEqual(resp.headers["ETag"], f'"{sha256(resp.data).hexdigest()}"')

    def test_with_rules(self):
        h = Handler()
        h.set_flags(
            _key,
            {
                "someflag": Flag(
                    99,
                    [
                        Rule("foo", Comparator.ONE_OF, "something", 88),
                        Rule("foo", Comparator.CONTAINS_ANY_OF, "xxx", 77),
                    ],
                )
            },
        )
        doc = json.loads(Client(h).get(_path).data)
        rules = doc["f"]["someflag"]["r"]
        self.assertEqual(
            rules,
            [
                {"c": [{"u": {"a": "foo", "c": 0, "l": ["something"]}}], "s": {"v": {"i": 88}, "i": "v0_someflag"}},
                {"c": [{"u": {"a": "foo", "c": 2, "l": ["xxx"]}}], "s": {"v": {"i": 77}, "i": "v1_someflag"}},
            ],
        )

    def test_conditional_get(self):
        h = Handler()
        h.set_flags(_key, _simple_flags())
        client = Client(h)

        resp = client.get(_path)
        self.assertEqual(resp.status_code, 200)
        etag = resp.headers["ETag"]
        body = resp.data

        resp = client.get(_path, headers={"If-None-Match": etag})
        self.assertEqual(resp.status_code, 304)
        self.assertEqual(resp.data, b"")
        self.assertEqual(resp.headers["ETag"], etag)

        resp = client.get(_path, headers={"If-None-Match": '"stale"'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data, body)
        self.assertEqual(resp.headers["ETag"], etag)

        # Only an exact match counts.
        resp = client.get(_path, headers={"If-None-Match": etag.strip('"')})
        self.assertEqual(resp.status_code, 200)

    def test_republish_changes_etag(self):
        h = Handler()
        client = Client(h)
        h.set_flags(_key, {"a": Flag(1)})
        etag1 = client.get(_path).headers["ETag"]

        # Same flags, same document.
        h.set_flags(_key, {"a": Flag(1)})
        self.assertEqual(client.get(_path, headers={"If-None-Match": etag1}).status_code, 304)

        h.set_flags(_key, {"a": Flag(2)})
        resp = client.get(_path, headers={"If-None-Match": etag1})
        self.assertEqual(resp.status_code, 200)
        self.assertNotEqual(resp.headers["ETag"], etag1)
        self.assertEqual(json.loads(resp.data)["f"]["a"]["v"], {"i": 2})

    def test_unencodable_string_fails_publish(self):
        h = Handler()
        client = Client(h)
        h.set_flags(_key, {"a": Flag("x")})
        before = client.get(_path)

        with self.assertRaisesRegex(CompileError, "invalid flag 'b'") as cm:
            h.set_flags(_key, {"a": Flag("y"), "b": Flag("\ud800")})
        self.assertEqual(cm.exception.field, "default")

        after = client.get(_path)
        self.assertEqual(after.data, before.data)
        self.assertEqual(after.headers["ETag"], before.headers["ETag"])

    def test_failed_publish_keeps_previous_document(self):
        h = Handler()
        client = Client(h)
        h.set_flags(_key, {"a": Flag(1)})
        before = client.get(_path)

        with self.assertRaisesRegex(CompileError, "invalid flag 'bad'"):
            h.set_flags(_key, {"a": Flag(2), "bad": Flag(object())})  # type: ignore[arg-type]

        after = client.get(_path)
        self.assertEqual(after.status_code, 200)
        self.assertEqual(after.data, before.data)
        self.assertEqual(after.headers["ETag"], before.headers["ETag"])

    def test_failed_first_publish_registers_nothing(self):
        h = Handler()
        with self.assertRaises(CompileError):
            h.set_flags(_key, {"bad": Flag(1, [Rule("", Comparator.EQ, "x", 2)])})
        self.assertEqual(Client(h).get(_path).status_code, 404)

    def test_key_not_found(self):
        h = Handler()
        h.set_flags(_key, _simple_flags())
        client = Client(h)
        cases = [
            "/configuration-files/otherkey/config_v6.json",
            f"/configuration-files/{_key}/config_v4.json",
            f"/configuration-files/{_key}",
            f"/configuration-files/{_key}/",
            f"/configuration-files//{CONFIG_JSON_NAME}",
            f"/configuration-files/{CONFIG_JSON_NAME}",
            f"/other/{_key}/{CONFIG_JSON_NAME}",
            "/",
        ]
        for path in cases:
            with self.subTest(path):
                self.assertEqual(client.get(path).status_code, 404)

    def test_never_published(self):
        self.assertEqual(Client(Handler()).get(_path).status_code, 404)

    def test_wrong_method(self):
        h = Handler()
        h.set_flags(_key, _simple_flags())
        client = Client(h)
        for method in ["POST", "PUT", "DELETE", "PATCH", "HEAD"]:
            for path in [_path, "/"]:
                with self.subTest(method=method, path=path):
                    resp = client.open(path, method=method, data="x")
                    self.assertEqual(resp.status_code, 405)
                    self.assertEqual(resp.headers["Allow"], "GET")

    def test_reserved_key_without_flags(self):
        h = Handler(distribution_keys=[_key])
        client = Client(h)
        with self.assertLogs("src.flagwire", level="ERROR"):
            self.assertEqual(client.get(_path).status_code, 500)
        h.set_flags(_key, {"a": Flag(True)})
        self.assertEqual(client.get(_path).status_code, 200)

    def test_empty_key(self):
        h = Handler()
        with self.assertRaisesRegex(ValueError, "empty distribution key"):
            h.set_flags("", {})
        with self.assertRaisesRegex(ValueError, "empty distribution key"):
            Handler(distribution_keys=[""])

    def test_handlers_are_independent(self):
        h1, h2 = Handler(), Handler()
        h1.set_flags(_key, {"a": Flag(1)})
        h2.set_flags(_key, {"a": Flag(2)})
        self.assertEqual(json.loads(Client(h1).get(_path).data)["f"]["a"]["v"], {"i": 1})
        self.assertEqual(json.loads(Client(h2).get(_path).data)["f"]["a"]["v"], {"i": 2})

    def test_set_flags_from_dict(self):
        h = Handler()
        h.set_flags_from_dict(
            _key,
            {
                "a": {
                    "default": "off",
                    "rules": [{"attribute": "Country", "comparator": "ONE_OF", "comparison_value": "AU,NZ", "value": "on"}],
                }
            },
        )
        doc = json.loads(Client(h).get(_path).data)
        self.assertEqual(
            doc["f"]["a"],
            {
                "t": 1,
                "v": {"s": "off"},
                "i": "v_a",
                "r": [{"c": [{"u": {"a": "Country", "c": 0, "l": ["AU", "NZ"]}}], "s": {"v": {"s": "on"}, "i": "v0_a"}}],
            },
        )


class TestLegacyDocument(unittest.TestCase):
    def test_legacy_document(self):
        h = Handler()
        h.set_flags(
            _key,
            {
                "someflag": Flag(
                    99,
                    [
                        Rule("foo", Comparator.ONE_OF, "a, b", 88),
                        Rule("age", Comparator.LESS_NUM, " 18 ", 77),
                    ],
                )
            },
        )
        client = Client(h)
        resp = client.get(_legacy_path)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(
            json.loads(resp.data),
            {
                "f": {
                    "someflag": {
                        "i": "v_someflag",
                        "v": 99,
                        "t": 2,
                        "r": [
                            {"i": "v0_someflag", "v": 88, "a": "foo", "c": "a, b", "t": 0},
                            {"i": "v1_someflag", "v": 77, "a": "age", "c": " 18 ", "t": 12},
                        ],
                        "p": [],
                    }
                }
            },
        )
        etag = resp.headers["ETag"]
        self.assertNotEqual(etag, client.get(_path).headers["ETag"])
        self.assertEqual(client.get(_legacy_path, headers={"If-None-Match": etag}).status_code, 304)

    def test_newer_comparators_have_no_legacy_document(self):
        h = Handler()
        h.set_flags(_key, {"a": Flag(1, [Rule("x", Comparator.STARTS_WITH_ANY_OF, "y", 2)])})
        client = Client(h)
        self.assertEqual(client.get(_path).status_code, 200)
        self.assertEqual(client.get(_legacy_path).status_code, 404)

    def test_legacy_disabled(self):
        h = Handler(legacy=False)
        h.set_flags(_key, {"a": Flag(1)})
        client = Client(h)
        self.assertEqual(client.get(_path).status_code, 200)
        self.assertEqual(client.get(_legacy_path).status_code, 404)
        self.assertIsNone(h.registry.lookup(_key, LEGACY_CONFIG_JSON_NAME))


class TestRegistry(unittest.TestCase):
    def test_lookup(self):
        r = Registry()
        self.assertIsNone(r.lookup(_key))
        self.assertFalse(r.is_known(_key))
        r.reserve(_key)
        self.assertTrue(r.is_known(_key))
        self.assertIsNone(r.lookup(_key))
        r.publish(_key, {"a": Flag(True)})
        doc = r.lookup(_key)
        assert doc is not None
        self.assertEqual(json.loads(doc.content)["f"]["a"]["v"], {"b": True})
        self.assertEqual(doc.etag, f'"{sha256(doc.content).hexdigest()}"')
        self.assertIsNone(r.lookup(_key, "config_v4.json"))

    def test_reserve_keeps_published(self):
        r = Registry()
        r.publish(_key, {"a": Flag(True)})
        r.reserve(_key)
        self.assertIsNotNone(r.lookup(_key))

    def test_concurrent_publish_and_lookup(self):
        r = Registry()
        # Each flag set has every flag set to the same value so a document
        # mixing two publishes would show more than one value.
        flag_sets = [{f"flag{i}": Flag(n, [Rule("a", Comparator.EQ, "b", n + 1)]) for i in range(50)} for n in range(4)]
        r.publish(_key, flag_sets[0])
        stop = threading.Event()
        errors = []

        def _publisher(n):
            while not stop.is_set():
                r.publish(_key, flag_sets[n])

        def _reader():
            for _ in range(300):
                doc = r.lookup(_key)
                assert doc is not None
                if doc.etag != f'"{sha256(doc.content).hexdigest()}"':
                    errors.append("etag mismatch")
                values = {s["v"]["i"] for s in json.loads(doc.content)["f"].values()}
                if len(values) != 1:
                    errors.append(f"mixed document {values}")

        publishers = [threading.Thread(target=_publisher, args=(n,)) for n in range(len(flag_sets))]
        readers = [threading.Thread(target=_reader) for _ in range(4)]
        for t in publishers + readers:
            t.start()
        for t in readers:
            t.join()
        stop.set()
        for t in publishers:
            t.join()
        self.assertEqual(errors, [])
