"""
Package catalogs - credit packages sold through checkout and vote
packages bought with credits.
"""

from dataclasses import dataclass

from fable_ledger.exceptions import PackageNotFoundError


@dataclass(frozen=True)
class CreditPackage:
    """Credit package sold through the payment processor."""

    package_id: str
    name: str
    credits: int
    price_minor: int
    currency: str = "usd"
    popular: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate package configuration."""
        if not self.package_id:
            raise ValueError("Package ID required")
        if self.credits <= 0:
            raise ValueError(f"Credits must be positive: {self.credits}")
        if self.price_minor <= 0:
            raise ValueError(f"Price must be positive: {self.price_minor}")


@dataclass(frozen=True)
class VotePackage:
    """Bundle of premium/super votes for one contest, paid for in credits."""

    package_id: str
    name: str
    premium_votes: int
    super_votes: int
    credit_cost: int

    def __post_init__(self) -> None:
        """Validate package configuration."""
        if not self.package_id:
            raise ValueError("Package ID required")
        if self.premium_votes < 0 or self.super_votes < 0:
            raise ValueError("Vote counts cannot be negative")
        if self.premium_votes + self.super_votes == 0:
            raise ValueError("Package must contain at least one vote")
        if self.credit_cost <= 0:
            raise ValueError(f"Credit cost must be positive: {self.credit_cost}")


CREDIT_PACKAGES: dict[str, CreditPackage] = {
    "starter": CreditPackage(
        package_id="starter",
        name="Starter Pack",
        credits=50,
        price_minor=499,
        description="Perfect for trying out premium content",
    ),
    "popular": CreditPackage(
        package_id="popular",
        name="Popular Pack",
        credits=100,
        price_minor=999,
        popular=True,
        description="Most popular choice for regular readers",
    ),
    "premium": CreditPackage(
        package_id="premium",
        name="Premium Pack",
        credits=200,
        price_minor=1999,
        description="Best value for avid readers",
    ),
}

VOTE_PACKAGES: dict[str, VotePackage] = {
    "basic": VotePackage(
        package_id="basic", name="Basic Votes", premium_votes=3, super_votes=0, credit_cost=5
    ),
    "pro": VotePackage(
        package_id="pro", name="Pro Votes", premium_votes=10, super_votes=1, credit_cost=25
    ),
    "super": VotePackage(
        package_id="super", name="Super Votes", premium_votes=20, super_votes=5, credit_cost=100
    ),
}


def get_credit_package(package_id: str) -> CreditPackage:
    """
    Get credit package by ID.

    Raises:
        PackageNotFoundError: If package ID not found
    """
    package = CREDIT_PACKAGES.get(package_id)
    if package is None:
        raise PackageNotFoundError(package_id)
    return package


def get_vote_package(package_id: str) -> VotePackage:
    """
    Get vote package by ID.

    Raises:
        PackageNotFoundError: If package ID not found
    """
    package = VOTE_PACKAGES.get(package_id)
    if package is None:
        raise PackageNotFoundError(package_id)
    return package
