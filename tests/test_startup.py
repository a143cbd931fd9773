from payroute.common.config import CommonSettings
from payroute.common.startup import redacted_settings


def test_secrets_are_masked():
    config = CommonSettings(
        database_url="postgresql://user:pw@db/payroute",
        webhook_secrets={"stripe": "whsec_live", "xendit": "xnd_secret"},
    )

    safe = redacted_settings(config)

    assert safe["database_url"] == "<redacted>"
    assert safe["webhook_secrets"] == ["stripe", "xendit"]
    assert safe["default_provider"] == "stripe"
    assert "whsec_live" not in str(safe)
