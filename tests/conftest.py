"""
Shared fixtures for subscriber tests.
"""
import pytest

ORDER_TOPIC = "/event/Order_Created__e"

ORDER_SCHEMA = {
    "type": "record",
    "name": "OrderCreated",
    "namespace": "test.events",
    "fields": [
        {"name": "CreatedDate", "type": "long"},
        {"name": "OrderId", "type": "string"},
        {"name": "Amount", "type": ["null", "double"], "default": None},
        {"name": "Signature", "type": "bytes"},
        {
            "name": "Customer",
            "type": {
                "type": "record",
                "name": "Customer",
                "fields": [
                    {"name": "Name", "type": "string"},
                    {"name": "Vip", "type": "boolean"},
                ],
            },
        },
        {
            "name": "Lines",
            "type": {
                "type": "array",
                "items": {
                    "type": "record",
                    "name": "Line",
                    "fields": [
                        {"name": "Sku", "type": "string"},
                        {"name": "Qty", "type": "int"},
                    ],
                },
            },
        },
        {"name": "Tags", "type": {"type": "map", "values": "string"}},
    ],
}


def make_order(order_id: str = "801xx000003GZ1", amount: float | None = 125.5) -> dict:
    return {
        "CreatedDate": 1760000000000,
        "OrderId": order_id,
        "Amount": amount,
        "Signature": b"\x00\x01sig",
        "Customer": {"Name": "Acme", "Vip": True},
        "Lines": [{"Sku": "SKU-1", "Qty": 2}, {"Sku": "SKU-2", "Qty": 1}],
        "Tags": {"channel": "web"},
    }


class RecordingHandler:
    """Async handler that records every call and can fail on demand."""

    def __init__(self, fail_on: set[int] | None = None, result: bool | None = None):
        self.calls: list[tuple[dict, dict]] = []
        self.fail_on = fail_on or set()
        self.result = result

    async def __call__(self, fields, attributes):
        index = len(self.calls)
        self.calls.append((fields, attributes))
        if index in self.fail_on:
            raise RuntimeError(f"handler failed on event {index}")
        return self.result

    @property
    def fields(self) -> list[dict]:
        return [fields for fields, _ in self.calls]


@pytest.fixture
def order_schema():
    return ORDER_SCHEMA


@pytest.fixture
def handler():
    return RecordingHandler()
