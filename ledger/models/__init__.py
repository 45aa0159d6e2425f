from .movement import TreasuryMovement
