import pytest

from server_templates import ServerTemplate, ServerTemplateManager, normalize_port_spec


def test_default_templates_listed_in_order():
    ids = [t.id for t in ServerTemplateManager().list()]
    assert ids[0] == "minecraft"
    assert set(ids) >= {"minecraft", "valheim", "terraria", "factorio"}


def test_get_known_and_unknown():
    manager = ServerTemplateManager()
    minecraft = manager.get("minecraft")
    assert minecraft.image == "itzg/minecraft-server"
    assert minecraft.ports == ("25565/tcp",)
    assert dict(minecraft.env) == {"EULA": "TRUE", "MEMORY": "1G"}
    assert manager.get("nope") is None
    assert manager.get(None) is None


def test_templates_are_immutable():
    template = ServerTemplate(id="t", name="T", image="img", ports=[1234], env={"A": "1"})
    with pytest.raises(AttributeError):
        template.image = "other"
    with pytest.raises(TypeError):
        template.env["A"] = "2"


def test_port_spec_normalization():
    assert normalize_port_spec(2456) == "2456/tcp"
    assert normalize_port_spec("2456/UDP") == "2456/udp"


def test_to_dict_is_plain():
    data = ServerTemplateManager().get("valheim").to_dict()
    assert data["ports"] == ["2456/udp", "2457/udp"]
    assert isinstance(data["env"], dict)
