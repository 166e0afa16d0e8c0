"""
Firmware feature: simulated GPIO board.

Inputs float high (pull-up) until a test or simulator drives them. Every
relay write is recorded with the time it happened.
"""


class SimulatedBoard:
    def __init__(self):
        self._inputs: dict[int, bool] = {}
        self._outputs: dict[int, bool] = {}
        self.writes: list[tuple[int, int, bool]] = []  # (ms, pin, level)
        self.now_ms = 0

    def set_input(self, pin: int, level: bool) -> None:
        self._inputs[pin] = level

    def read_input(self, pin: int) -> bool:
        return self._inputs.get(pin, True)

    def write(self, pin: int, level: bool) -> None:
        self._outputs[pin] = level
        self.writes.append((self.now_ms, pin, level))

    def read_output(self, pin: int) -> bool | None:
        return self._outputs.get(pin)
