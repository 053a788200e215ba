import pytest

from sophonminer.address import Address, AddressError, Protocol, new_id_address


def test_parse_id_address_round_trip():
    addr = Address.from_string("f021344")
    assert addr.protocol is Protocol.ID
    assert str(addr) == "f021344"
    assert addr == new_id_address(21344)


def test_id_address_bytes():
    assert new_id_address(1).to_bytes() == b"\x00\x01"


def test_testnet_prefix_parses_to_same_address():
    assert Address.from_string("t021344") == Address.from_string("f021344")


@pytest.mark.parametrize(
    "protocol, size",
    [(Protocol.SECP256K1, 20), (Protocol.ACTOR, 20), (Protocol.BLS, 48)],
)
def test_hashed_address_round_trip(protocol, size):
    addr = Address(protocol, bytes(range(size)))
    text = str(addr)
    assert text[1] == str(int(protocol))
    parsed = Address.from_string(text)
    assert parsed == addr
    assert parsed.to_bytes()[0] == int(protocol)


def test_delegated_address_round_trip():
    addr = Address(Protocol.DELEGATED, b"\x0a" + bytes(range(20)))
    parsed = Address.from_string(str(addr))
    assert parsed == addr


def test_corrupted_checksum_rejected():
    text = str(Address(Protocol.SECP256K1, bytes(20)))
    last = "a" if text[-1] != "a" else "b"
    with pytest.raises(AddressError):
        Address.from_string(text[:-1] + last)


@pytest.mark.parametrize("text", ["", "f0", "x01", "f9abc", "f0abc", "f0-1", "f1!!!!"])
def test_malformed_strings_rejected(text):
    with pytest.raises(AddressError):
        Address.from_string(text)


def test_wrong_payload_length_rejected():
    with pytest.raises(AddressError):
        Address(Protocol.SECP256K1, bytes(19))


def test_negative_id_rejected():
    with pytest.raises(AddressError):
        new_id_address(-1)


def test_addresses_are_hashable_keys():
    table = {new_id_address(1): "a", new_id_address(2): "b"}
    assert table[Address.from_string("f01")] == "a"