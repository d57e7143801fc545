import json
from datetime import datetime

from autolauncher.bus import EntryError, EventBus
from autolauncher.config.loader import camel_to_snake, convert_keys, load_config, save_config, snake_to_camel
from autolauncher.config.schema import Config
from autolauncher.credentials import ConfigCredentialVault
from autolauncher.schedule import TriggerEngine
from autolauncher.timer import VirtualTimer

SAMPLE = {
    "scheduler": {"globalConcurrencyLimit": 2, "killPreviousWaitsForExit": False},
    "launcher": {"command": "java", "env": {"JAVA_HOME": "/opt/jdk"}},
    "scenarios": [{"id": 1, "name": "Farming"}],
    "characters": [{"id": "char-1", "name": "Alice", "credentialId": "cred-1"}],
    "credentials": [{"id": "cred-1", "username": "alice", "password": "hunter2"}],
    "schedules": [
        {
            "id": "s1",
            "name": "Daily",
            "concurrencyLimit": 1,
            "entries": [
                {
                    "id": "e1",
                    "scenarioId": 1,
                    "characterId": "char-1",
                    "cadence": {"type": "every", "unit": "minutes", "n": 30, "startTimeISO": "2026-01-05T08:00:00Z"},
                    "maxDurationMs": 60000,
                    "overlapPolicy": "queue",
                    "retries": {"max": 2, "backoffMs": 1000},
                    "enabled": True,
                },
                {
                    "id": "e2",
                    "scenarioId": "1",
                    "characterId": "char-1",
                    "cadence": {"type": "cron", "expression": "0 9 * * *", "tz": "UTC"},
                    "maxDurationMs": 5000,
                },
                {
                    "id": "e3",
                    "scenarioId": "1",
                    "characterId": "char-1",
                    "cadence": {"type": "once", "atISO": "2026-02-01T10:30:00"},
                    "maxDurationMs": 5000,
                    "overlapPolicy": "kill-previous",
                },
            ],
        }
    ],
}


def _write(tmp_path, data) -> object:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


# 测试从 camelCase 文件加载配置，包括旧版字段
def test_load_config(tmp_path) -> None:
    config = load_config(_write(tmp_path, SAMPLE))

    assert config.scheduler.global_concurrency_limit == 2
    assert config.scheduler.kill_previous_waits_for_exit is False
    assert config.scheduler.grace_window_ms == 10_000
    assert config.launcher.env == {"JAVA_HOME": "/opt/jdk"}
    assert config.scenarios[0].id == "1"
    assert config.characters[0].credential_id == "cred-1"


# 测试转换为调度核心的不可变调度
def test_to_schedules(tmp_path) -> None:
    [schedule] = load_config(_write(tmp_path, SAMPLE)).to_schedules()

    assert schedule.concurrency_limit == 1
    e1, e2, e3 = schedule.entries

    assert e1.scenario_id == "1"
    assert e1.resource_id == "char-1"
    assert e1.overlap_policy == "queue"
    assert (e1.retry.max, e1.retry.backoff_ms) == (2, 1000)
    # 末尾的 Z 按本地时间解释
    assert e1.cadence.kind == "every"
    assert e1.cadence.anchor_ms == int(datetime(2026, 1, 5, 8, 0).timestamp() * 1000)

    assert (e2.cadence.kind, e2.cadence.expr, e2.cadence.tz) == ("cron", "0 9 * * *", "UTC")
    assert e2.overlap_policy == "skip"
    assert e2.retry is None

    assert e3.cadence.kind == "once"
    assert e3.cadence.at_ms == int(datetime(2026, 2, 1, 10, 30).timestamp() * 1000)


# 测试目录按 ID 查找场景和角色
def test_catalog(tmp_path) -> None:
    catalog = load_config(_write(tmp_path, SAMPLE)).catalog()

    assert catalog.get_scenario("1").name == "Farming"
    assert catalog.get_resource("char-1").name == "Alice"
    assert catalog.get_scenario("2") is None
    assert catalog.get_resource("char-2") is None


# 测试格式错误的文件回退到默认配置
def test_malformed_config_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{ not json", encoding="utf-8")
    assert load_config(path).scheduler.global_concurrency_limit == 3


# 测试格式错误的节奏只影响对应条目，其余配置和条目照常加载并布防
def test_bad_cadence_only_disarms_its_entry(tmp_path) -> None:
    def entry(entry_id: str, cadence: dict) -> dict:
        return {"id": entry_id, "scenarioId": 1, "characterId": "char-1", "maxDurationMs": 1_000, "cadence": cadence}

    data = {
        "scheduler": {"globalConcurrencyLimit": 5},
        "schedules": [
            {"id": "good", "name": "Good", "entries": [entry("g1", {"type": "every", "unit": "minutes", "n": 5})]},
            {"id": "bad", "name": "Bad", "entries": [
                entry("b1", {"type": "once", "at": "not-a-date"}),
                entry("b2", {"type": "every", "unit": "minutes", "n": 1, "startTime": "someday"}),
                entry("b3", {"type": "weekly"}),
                entry("b4", {"type": "cron", "expression": "0 9 * * *"}),
            ]},
        ],
    }
    config = load_config(_write(tmp_path, data))

    assert config.scheduler.global_concurrency_limit == 5
    assert [s.id for s in config.to_schedules()] == ["good", "bad"]

    bus = EventBus()
    errors: list[EntryError] = []
    bus.subscribe(EntryError, errors.append)
    engine = TriggerEngine(bus, VirtualTimer())

    assert engine.register_schedules(config.to_schedules()) == 2
    assert [(e.schedule_id, e.entry_id) for e in errors] == [("bad", "b1"), ("bad", "b2"), ("bad", "b3")]
    assert "not-a-date" in errors[0].error
    assert "someday" in errors[1].error


# 测试缺失的文件返回默认配置
def test_missing_config_returns_defaults(tmp_path) -> None:
    config = load_config(tmp_path / "missing.json")
    assert config.launcher.args == ["-jar", "hafen.jar", "-bots", "{bot_config}"]
    assert config.ledger.retention_days == 14


# 测试保存后再加载得到相同的配置，环境变量名保持原样
def test_save_and_reload(tmp_path) -> None:
    config = load_config(_write(tmp_path, SAMPLE))
    target = tmp_path / "saved.json"
    save_config(config, target)

    raw = json.loads(target.read_text(encoding="utf-8"))
    assert raw["scheduler"]["globalConcurrencyLimit"] == 2
    assert raw["launcher"]["env"] == {"JAVA_HOME": "/opt/jdk"}
    assert raw["schedules"][0]["entries"][0]["maxDurationMs"] == 60000

    assert load_config(target).to_schedules() == config.to_schedules()


# 测试键名转换
def test_key_conversion() -> None:
    assert camel_to_snake("maxDurationMs") == "max_duration_ms"
    assert snake_to_camel("max_duration_ms") == "maxDurationMs"
    assert convert_keys({"env": {"JAVA_HOME": "x"}, "startTime": 1}) == {"env": {"JAVA_HOME": "x"}, "start_time": 1}


# 测试环境变量覆盖默认值
def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("AUTOLAUNCHER_SCHEDULER__GLOBAL_CONCURRENCY_LIMIT", "7")
    assert Config().scheduler.global_concurrency_limit == 7


# 测试凭据库按角色解析凭据
async def test_credential_vault(tmp_path) -> None:
    data = dict(SAMPLE)
    data["characters"] = [
        {"id": "char-1", "name": "Alice", "credentialId": "cred-1"},
        {"id": "char-2", "name": "Bob"},
        {"id": "char-3", "name": "Eve", "credentialId": "missing"},
    ]
    vault = ConfigCredentialVault(load_config(_write(tmp_path, data)))

    secret = await vault.resolve_secret("char-1")
    assert (secret.username, secret.password) == ("alice", "hunter2")
    assert await vault.resolve_secret("char-2") is None
    assert await vault.resolve_secret("char-3") is None
    assert await vault.resolve_secret("nobody") is None
