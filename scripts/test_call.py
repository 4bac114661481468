#!/usr/bin/env python3
"""
Script to exercise a running CallBridge server by placing a test call
for a tenant
"""

import os
import sys
import asyncio
import httpx

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")


async def check_health():
    """Check the health endpoint"""
    print("Checking health endpoint...")
    async with httpx.AsyncClient() as client:
        response = await client.get(f"{API_BASE_URL}/health")
        print(f"Health: {response.json()}")
        return response.status_code == 200


async def check_ready():
    """Check the readiness endpoint"""
    print("\nChecking readiness endpoint...")
    async with httpx.AsyncClient() as client:
        response = await client.get(f"{API_BASE_URL}/ready")
        print(f"Ready: {response.json()}")
        return response.json()


async def place_test_call(tenant_id: str, phone_number: str):
    """Place an outbound call for the tenant"""
    print(f"\nPlacing test call to {phone_number} for tenant {tenant_id}...")

    async with httpx.AsyncClient(timeout=30.0) as client:
        response = await client.post(
            f"{API_BASE_URL}/api/v1/tenants/{tenant_id}/calls",
            json={"phone": phone_number}
        )

        if response.status_code == 200:
            data = response.json()
            print("Call initiated successfully!")
            print(f"  Request ID: {data.get('requestId')}")
            print(f"  Call SID: {data.get('callSid')}")
            print(f"  Agent: {data.get('agentId')}")
            return data

        print(f"Failed to initiate call: {response.status_code}")
        print(f"Error: {response.text}")
        return None


async def list_recent_calls(tenant_id: str):
    """Show the tenant's most recent calls"""
    print(f"\nRecent calls for {tenant_id}...")

    async with httpx.AsyncClient() as client:
        response = await client.get(f"{API_BASE_URL}/api/v1/tenants/{tenant_id}/calls", params={"limit": 5})

        if response.status_code == 200:
            data = response.json()
            print(f"Total calls: {data.get('total')}")
            for entry in data.get("callHistory", []):
                call = entry.get("call_data", {})
                print(f"  - {call.get('call_sid')}: {call.get('status')} ({call.get('carrier_status')})")
            return data

        print(f"Failed to list calls: {response.status_code}")
        return None


async def main():
    """Main function"""
    print("=" * 60)
    print("CallBridge Test Call Script")
    print("=" * 60)

    if not await check_health():
        print("Server is not healthy. Exiting.")
        return

    ready_status = await check_ready()
    if ready_status.get("status") != "ready":
        print("Warning: Server is not fully ready")
        print(f"Checks: {ready_status.get('checks')}")

    if len(sys.argv) < 3:
        print("\nUsage: python test_call.py <tenant_id> <phone_number>")
        print("Example: python test_call.py acme +14155551234")
        print("\nSkipping call test. Only running health checks.")
        return

    tenant_id, phone_number = sys.argv[1], sys.argv[2]

    if not phone_number.startswith("+"):
        print("Error: Phone number must be in E.164 format (e.g., +14155551234)")
        return

    if await place_test_call(tenant_id, phone_number):
        print("\nWaiting 5 seconds before checking call history...")
        await asyncio.sleep(5)
        await list_recent_calls(tenant_id)


if __name__ == "__main__":
    asyncio.run(main())
