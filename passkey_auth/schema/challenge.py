"""
Passkey Sessions API

Ceremony option models
"""

from pydantic import BaseModel, Field


class CeremonyOptions(BaseModel):
    """Ceremony options plus the token that addresses their challenge.

    Attributes:
        `publicKey`: PublicKeyCredentialCreationOptions (registration) or
                     PublicKeyCredentialRequestOptions (authentication), in the
                     JSON form browsers and client libraries accept
        `challengeToken`: Opaque single-use token; send it back with the
                          ceremony result

    https://www.w3.org/TR/webauthn-2/#dictdef-publickeycredentialcreationoptions
    https://www.w3.org/TR/webauthn-2/#dictionary-assertion-options
    """

    publicKey: dict
    challengeToken: str = Field(examples=["b2pRb0c2..."])
