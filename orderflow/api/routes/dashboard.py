"""
Dashboard routes
"""
from fastapi import APIRouter, Depends, HTTPException

from orderflow.api.deps import get_runtime
from orderflow.runtime import Runtime
from orderflow.schemas.orders import DashboardResponse

router = APIRouter()


@router.get("", response_model=DashboardResponse)
async def get_dashboard(runtime: Runtime = Depends(get_runtime)):
    """Cumulative and today's counters"""
    return await runtime.statistics.get_dashboard()


@router.get("/reports/{date}")
async def get_report(date: str, runtime: Runtime = Depends(get_runtime)):
    """Report history row for one business day (YYYY-MM-DD)"""
    report = await runtime.statistics.get_report(date)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No report for {date}")
    return report


@router.post("/jobs/{job_name}")
async def run_job(job_name: str, runtime: Runtime = Depends(get_runtime)):
    """Manually trigger a retention or ledger job"""
    try:
        return await runtime.scheduler.run_job_now(job_name)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
