from conftest import bearer
from database import USERS

HR = "hr@acme.com"
EMP = "eli@mail.com"


def register(client, email, path="/user", **body):
    body.setdefault("email", email)
    return client.post(path, json=body, headers=bearer(email))


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "Welcome to AssetVerse Server"


def test_missing_token_is_401(client):
    response = client.get("/profile")
    assert response.status_code == 401
    assert response.json()["error"] == "Unauthenticated"


def test_register_hr_sets_defaults_once(client, db):
    response = register(client, HR, name="Hana", companyName="Acme", companyLogo="logo.png")
    assert response.status_code == 200
    assert response.json()["message"] == "User created"
    user = response.json()["user"]
    assert user["role"] == "hr"
    assert user["packageLimit"] == 5
    assert user["currentEmployees"] == 0

    db[USERS].update_one({"email": HR}, {"$set": {"currentEmployees": 3}})
    response = register(client, HR, name="Hana K", companyName="Other Co")
    assert response.json()["message"] == "User updated"
    user = response.json()["user"]
    assert user["name"] == "Hana K"
    assert user["companyName"] == "Acme"
    assert user["currentEmployees"] == 3

    role = client.get("/user/role", headers=bearer(HR)).json()
    assert role == {"role": "hr", "companyName": "Acme"}


def test_register_hr_needs_company(client):
    response = register(client, HR, name="Hana")
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidInput"


def test_register_other_email_forbidden(client):
    response = client.post("/user/employee", json={"email": "boss@acme.com"}, headers=bearer(EMP))
    assert response.status_code == 403


def test_register_cannot_switch_role(client):
    register(client, EMP, path="/user/employee", name="Eli")
    response = register(client, EMP, companyName="Shadow Inc")
    assert response.status_code == 400
    assert response.json()["error"] == "Conflict"


def test_unregistered_role_is_null(client):
    assert client.get("/user/role", headers=bearer("ghost@mail.com")).json() == {"role": None, "companyName": None}
    assert client.get("/profile", headers=bearer("ghost@mail.com")).status_code == 403


def test_profile_update(client, employee):
    response = client.patch("/user/update", json={"name": "Eli R", "photo": "me.png", "role": "hr"}, headers=bearer(EMP))
    assert response.status_code == 200
    assert response.json()["name"] == "Eli R"
    assert response.json()["photo"] == "me.png"
    assert response.json()["role"] == "employee"


def test_employee_cannot_add_asset(client, employee):
    response = client.post(
        "/assets",
        json={"productName": "Laptop", "productType": "Returnable", "productQuantity": 2},
        headers=bearer(EMP),
    )
    assert response.status_code == 403


def test_asset_validation_errors_are_400(client, hr):
    bad_quantity = client.post(
        "/assets",
        json={"productName": "Laptop", "productType": "Returnable", "productQuantity": 0},
        headers=bearer(HR),
    )
    assert bad_quantity.status_code == 400
    assert bad_quantity.json()["error"] == "InvalidInput"
    not_a_number = client.post(
        "/assets",
        json={"productName": "Laptop", "productType": "Returnable", "productQuantity": "many"},
        headers=bearer(HR),
    )
    assert not_a_number.status_code == 400


def test_asset_listing(client, hr, other_hr, employee):
    for name, qty in (("Laptop", 2), ("Desk", 1)):
        client.post("/assets", json={"productName": name, "productType": "Returnable", "productQuantity": qty},
                    headers=bearer(HR))
    client.post("/assets", json={"productName": "Laptop Stand", "productType": "Non-returnable", "productQuantity": 1},
                headers=bearer("hr@globex.com"))

    mine = client.get("/assets", params={"mine": "true"}, headers=bearer(HR)).json()
    assert sorted(a["productName"] for a in mine) == ["Desk", "Laptop"]

    available = client.get("/assets", params={"search": "laptop"}, headers=bearer(EMP)).json()
    assert sorted(a["productName"] for a in available) == ["Laptop", "Laptop Stand"]

    non_returnable = client.get("/assets", params={"type": "Non-returnable"}, headers=bearer(EMP)).json()
    assert [a["productName"] for a in non_returnable] == ["Laptop Stand"]

    assert client.get("/assets", params={"mine": "true"}, headers=bearer(EMP)).status_code == 403


def test_delete_asset(client, hr, other_hr, laptop):
    path = f"/assets/{laptop['_id']}"
    assert client.delete(path, headers=bearer("hr@globex.com")).status_code == 403
    assert client.delete(path, headers=bearer(HR)).status_code == 200
    assert client.delete(path, headers=bearer(HR)).status_code == 404
    assert client.delete("/assets/nope", headers=bearer(HR)).status_code == 400


def test_request_approve_return_over_http(client, hr, employee):
    created = client.post(
        "/assets",
        json={"productName": "Laptop", "productType": "Returnable", "productQuantity": 3},
        headers=bearer(HR),
    ).json()
    assert created["availableQuantity"] == 3

    request = client.post("/requests", json={"assetId": created["_id"], "note": "new hire"}, headers=bearer(EMP))
    assert request.status_code == 200
    request = request.json()
    assert request["requestStatus"] == "pending"

    duplicate = client.post("/requests", json={"assetId": created["_id"]}, headers=bearer(EMP))
    assert duplicate.status_code == 400
    assert duplicate.json()["error"] == "Conflict"

    inbox = client.get("/requests/all", params={"status": "pending"}, headers=bearer(HR)).json()
    assert [r["_id"] for r in inbox] == [request["_id"]]

    approved = client.patch(f"/requests/{request['_id']}/approve", headers=bearer(HR))
    assert approved.status_code == 200
    assigned_id = approved.json()["assignedAsset"]["_id"]

    again = client.patch(f"/requests/{request['_id']}/approve", headers=bearer(HR))
    assert again.status_code == 400
    assert again.json()["error"] == "InvalidState"

    mine = client.get("/assets", params={"mine": "true"}, headers=bearer(HR)).json()
    assert mine[0]["availableQuantity"] == 2
    hr_profile = client.get("/profile", headers=bearer(HR)).json()
    assert hr_profile["currentEmployees"] == 1

    assigned = client.get("/assigned-assets/my", params={"status": "assigned"}, headers=bearer(EMP)).json()
    assert [a["_id"] for a in assigned] == [assigned_id]
    team = client.get("/employees/my", headers=bearer(HR)).json()
    assert len(team) == 1
    assert team[0]["employeeEmail"] == EMP
    assert team[0]["assetsCount"] == 1

    returned = client.patch(f"/assigned-assets/{assigned_id}/return", headers=bearer(EMP))
    assert returned.status_code == 200
    assert returned.json()["assignedAsset"]["status"] == "returned"

    mine = client.get("/assets", params={"mine": "true"}, headers=bearer(HR)).json()
    assert mine[0]["availableQuantity"] == 3
    my_requests = client.get("/requests/my", headers=bearer(EMP)).json()
    assert my_requests[0]["requestStatus"] == "returned"


def test_reject_over_http(client, hr, employee, laptop):
    request = client.post("/requests", json={"assetId": str(laptop["_id"])}, headers=bearer(EMP)).json()
    rejected = client.patch(f"/requests/{request['_id']}/reject", headers=bearer(HR))
    assert rejected.status_code == 200
    assert rejected.json()["request"]["requestStatus"] == "rejected"
    assert client.patch(f"/requests/{request['_id']}/approve", headers=bearer(HR)).status_code == 400


def test_hr_cannot_request_assets(client, hr, laptop):
    response = client.post("/requests", json={"assetId": str(laptop["_id"])}, headers=bearer(HR))
    assert response.status_code == 403


def test_request_needs_asset_id(client, employee):
    response = client.post("/requests", json={"note": "anything"}, headers=bearer(EMP))
    assert response.status_code == 400


def test_remove_employee_over_http(client, db, hr, employee, laptop):
    request = client.post("/requests", json={"assetId": str(laptop["_id"])}, headers=bearer(EMP)).json()
    client.patch(f"/requests/{request['_id']}/approve", headers=bearer(HR))

    response = client.patch(f"/employees/{EMP}/remove", headers=bearer(HR))
    assert response.status_code == 200
    assert response.json()["affiliation"]["status"] == "inactive"
    assert client.get("/employees/my", headers=bearer(HR)).json() == []
    assert db[USERS].find_one({"email": HR})["currentEmployees"] == 0
    assert client.patch(f"/employees/{EMP}/remove", headers=bearer(HR)).status_code == 404


def test_employee_cannot_approve(client, hr, employee, laptop):
    request = client.post("/requests", json={"assetId": str(laptop["_id"])}, headers=bearer(EMP)).json()
    assert client.patch(f"/requests/{request['_id']}/approve", headers=bearer(EMP)).status_code == 403
