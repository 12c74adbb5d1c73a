# (c) Copyright 2022 Aaron Kimball
#
# Chip families: how to reset each one over the serial control lines, and which
# Rust target triple its firmware is built for.

DTR = 'dtr'
RTS = 'rts'


class ResetStep(object):
    """
    Drive one serial control line to `level` (True = asserted), then hold for `hold` seconds.
    """

    __slots__ = ('line', 'level', 'hold')

    def __init__(self, line, level, hold=0.0):
        if line not in (DTR, RTS):
            raise ValueError(f"Unknown control line '{line}'")
        self.line = line
        self.level = level
        self.hold = hold

    def __eq__(self, other):
        if not isinstance(other, ResetStep):
            return NotImplemented
        return (self.line, self.level, self.hold) == (other.line, other.level, other.hold)

    def __repr__(self):
        return f'ResetStep({self.line}={self.level}, hold={self.hold})'


class Framework(object):
    """
    Firmware runtime flavor; determines the target triple suffix.
    """
    BAREMETAL = 'baremetal'
    ESP_IDF = 'esp-idf'

    _NAMES = {
        'baremetal': BAREMETAL,
        'esp-idf': ESP_IDF,
        'espidf': ESP_IDF,
    }

    ALL = [BAREMETAL, ESP_IDF]

    @classmethod
    def parse(cls, name):
        try:
            return cls._NAMES[name.lower()]
        except KeyError:
            raise ValueError(f"'{name}' is not a valid framework") from None

    @classmethod
    def from_target(cls, target):
        if target.endswith('-espidf'):
            return cls.ESP_IDF
        elif target.endswith('-none-elf'):
            return cls.BAREMETAL
        raise ValueError(f"Can't figure out framework from target '{target}'")


class Chip(object):
    """
    Supported chip families.
    """
    ESP32 = 'esp32'
    ESP32S2 = 'esp32s2'
    ESP32C3 = 'esp32c3'
    ESP8266 = 'esp8266'
    GENERIC = 'generic'

    ALL = [ESP32, ESP32S2, ESP32C3, ESP8266, GENERIC]

    @classmethod
    def parse(cls, name):
        name = name.lower()
        if name not in cls.ALL:
            raise ValueError(f"'{name}' is not a valid chip")
        return name

    @classmethod
    def from_target(cls, target):
        # Check the longer names first; '-esp32-' is not a substring of '-esp32s2-'.
        for chip in (cls.ESP32S2, cls.ESP32C3, cls.ESP8266, cls.ESP32):
            if f'-{chip}-' in target:
                return chip
        if target.startswith('riscv32imc-'):
            return cls.ESP32C3
        raise ValueError(
            f"Can't figure out chip from target '{target}'; try specifying the --chip option")

    @classmethod
    def target(cls, chip, framework=Framework.BAREMETAL):
        """
        Return the Rust target triple for firmware built for `chip` under `framework`.
        """
        if chip == cls.GENERIC:
            raise ValueError('No build target is known for generic chips')

        if chip == cls.ESP32C3:
            if framework == Framework.ESP_IDF:
                return 'riscv32imc-esp-espidf'
            return 'riscv32imc-unknown-none-elf'

        suffix = 'espidf' if framework == Framework.ESP_IDF else 'none-elf'
        return f'xtensa-{chip}-{suffix}'


# ESP dev boards wire RTS to EN (reset, active low through a transistor) and DTR to
# GPIO0/IO9 (boot-mode strap). Keep DTR released so the chip samples the strap high and
# boots the application, then pulse EN.
_ESP_AUTO_RESET = (
    ResetStep(DTR, False),
    ResetStep(RTS, True, 0.1),
    ResetStep(RTS, False),
)

# Arduino-style boards reset on a DTR pulse coupled through a capacitor.
_DTR_PULSE_RESET = (
    ResetStep(DTR, False, 0.05),
    ResetStep(DTR, True, 0.1),
    ResetStep(DTR, False),
)

RESET_SEQUENCES = {
    Chip.ESP32: _ESP_AUTO_RESET,
    Chip.ESP32S2: _ESP_AUTO_RESET,
    Chip.ESP32C3: _ESP_AUTO_RESET,
    Chip.ESP8266: _ESP_AUTO_RESET,
    Chip.GENERIC: _DTR_PULSE_RESET,
}


def reset_sequence(chip):
    """
    Return the ordered ResetStep list for a chip family.
    """
    try:
        return RESET_SEQUENCES[chip]
    except KeyError:
        raise ValueError(f"No reset sequence defined for chip '{chip}'") from None
