"""
ABO/Rh compatibility from the donor's side: which recipients a donor's
red cells can be given to.
"""

from bloodmatch.models import BloodType

O_NEG, O_POS = BloodType.O_NEG, BloodType.O_POS
A_NEG, A_POS = BloodType.A_NEG, BloodType.A_POS
B_NEG, B_POS = BloodType.B_NEG, BloodType.B_POS
AB_NEG, AB_POS = BloodType.AB_NEG, BloodType.AB_POS

# donor -> recipients. The transpose is the recipient-can-receive-from view.
DONATES_TO: dict[BloodType, frozenset[BloodType]] = {
    O_NEG: frozenset(BloodType),
    O_POS: frozenset({O_POS, A_POS, B_POS, AB_POS}),
    A_NEG: frozenset({A_NEG, A_POS, AB_NEG, AB_POS}),
    A_POS: frozenset({A_POS, AB_POS}),
    B_NEG: frozenset({B_NEG, B_POS, AB_NEG, AB_POS}),
    B_POS: frozenset({B_POS, AB_POS}),
    AB_NEG: frozenset({AB_NEG, AB_POS}),
    AB_POS: frozenset({AB_POS}),
}


def can_donate_to(donor_type: BloodType | str, recipient_type: BloodType | str) -> bool:
    return BloodType(recipient_type) in DONATES_TO[BloodType(donor_type)]


def compatible_request_types(donor_type: BloodType | str) -> frozenset[BloodType]:
    """Recipient types a donor can serve, used to pre-filter requests."""
    return DONATES_TO[BloodType(donor_type)]


def compatible_donor_types(recipient_type: BloodType | str) -> frozenset[BloodType]:
    recipient = BloodType(recipient_type)
    return frozenset(
        donor for donor, recipients in DONATES_TO.items() if recipient in recipients
    )
