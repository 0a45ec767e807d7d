import orjson


def dumps(d: dict) -> str:
    # orjson emits compact UTF-8; websockets wants text frames
    return orjson.dumps(d).decode("utf-8")


def loads(raw: str | bytes) -> object:
    return orjson.loads(raw)
