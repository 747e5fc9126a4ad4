"""Simple example showing a journey with a condition and a short delay."""

import asyncio

from journeyflow import JourneyService, RunExecutor
from journeyflow.persistence import InMemoryRunRepository
from journeyflow.transports import InMemoryTransport

JOURNEY = {
    "name": "post-discharge follow-up",
    "startNodeId": "welcome",
    "nodes": [
        {"id": "welcome", "type": "MESSAGE", "message": "Welcome home!", "next": "wait"},
        {"id": "wait", "type": "DELAY", "delaySeconds": 1, "next": "age-check"},
        {
            "id": "age-check",
            "type": "CONDITION",
            "condition": {"leftKey": "age", "operator": ">=", "rightValue": 65},
            "trueNext": "senior",
            "falseNext": "standard",
        },
        {"id": "senior", "type": "MESSAGE", "message": "A nurse will call you tomorrow."},
        {"id": "standard", "type": "MESSAGE", "message": "Book a check-up within 2 weeks."},
    ],
}


async def main():
    """Trigger one run and watch it resume after its delay."""
    repository = InMemoryRunRepository()
    transport = InMemoryTransport()
    executor = RunExecutor(repository, transport=transport)
    service = JourneyService(executor)

    journey_id = await service.create_journey(JOURNEY)
    result = await service.trigger(
        journey_id, patient_id="patient-42", context={"age": 71}, request_id="req-1"
    )
    print(f"✅ Run triggered: {result.run_id}")

    await asyncio.sleep(1.5)
    status = await service.status(result.run_id)
    print(f"📋 State: {status.run.state.value}")
    for step in status.steps:
        print(f"  - {step.type} {step.node_id or ''}")

    for message in transport.pending(executor.message_topic):
        print(f"📨 {message.patient_id}: {message.body}")

    await executor.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
