ORIGIN = "http://localhost:3000"
OTHER_ORIGIN = "http://localhost:5173"
EVIL_ORIGIN = "https://evil.example"


def register(server, authenticator, username, origin=ORIGIN, sign_count=0):
    """Run a full registration ceremony and return the attestation sent."""
    options = server.registration_options(username)
    attestation = authenticator.make_credential(options, origin, sign_count=sign_count)
    assert server.verify_registration(username, attestation) == {"verified": True}
    return attestation
