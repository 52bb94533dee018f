"""Pydantic schemas for the cost-preview endpoint."""

from pydantic import BaseModel

from src.cl_common.micros import micros_to_display, usd_micros_to_display


class EstimateResponse(BaseModel):
    kind: str
    model: str | None
    usd_micros: int
    usd_display: str
    microcredits: int
    credits_display: str
    credit_usd_per_credit_micros: int

    @classmethod
    def build(
        cls, kind: str, model: str | None, usd_micros: int, microcredits: int, factor: int
    ) -> "EstimateResponse":
        return cls(
            kind=kind,
            model=model,
            usd_micros=usd_micros,
            usd_display=usd_micros_to_display(usd_micros),
            microcredits=microcredits,
            credits_display=micros_to_display(microcredits, places=2),
            credit_usd_per_credit_micros=factor,
        )
