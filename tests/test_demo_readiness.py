import httpx

from product_options.app import create_admin_app, create_storefront_app
from product_options.cart import CartForm, SubmitEvent
from product_options.form_state import ControlEvent
from product_options.snapshot import TemplateSnapshotLoader
from product_options.storefront import HostContainer, StorefrontSession


def _login_admin(client) -> None:
    response = client.post("/login", data={"username": "admin", "password": "admin"})
    assert response.status_code == 302


def test_health_endpoint_available_without_auth_for_all_apps(tmp_path) -> None:
    db = tmp_path / "app.db"
    apps = [create_admin_app(str(db)), create_storefront_app(str(db))]

    for app in apps:
        response = app.test_client().get("/healthz")
        assert response.status_code == 200
        payload = response.get_json()
        assert payload["status"] == "ok"
        assert payload["app"] in {"admin", "storefront"}


def test_demo_journey_admin_to_storefront_to_cart(tmp_path) -> None:
    db = tmp_path / "app.db"

    admin = create_admin_app(str(db)).test_client()
    _login_admin(admin)
    template_id = admin.post("/api/templates", json={"name": "Gift Wrapping", "background_color": "#ffcc00"}).get_json()["id"]

    def add_field(**payload) -> int:
        response = admin.post(f"/api/templates/{template_id}/fields", json=payload)
        assert response.status_code == 201
        return response.get_json()["id"]

    wrap_id = add_field(name="wrap", label="Wrap", type="select", options=["None", "Paper", "Cloth"])
    ribbon_id = add_field(name="ribbon", label="Ribbon", type="radio", options=["Gold", "Silver", "Plain"], required=True)
    extras_id = add_field(name="extras", label="Extras", type="checkbox", options=["Card", "Bow"])
    message_id = add_field(name="message", label="Card message", type="text")

    rules = [
        {"parent_field_id": wrap_id, "parent_value": "Paper", "child_field_id": ribbon_id, "child_options": ["Gold", "Silver"]},
        {"expression": 'extras includes "Card"', "target_field_id": message_id, "action": "show"},
        {"expression": 'extras includes "Card"', "target_field_id": message_id, "action": "require"},
    ]
    for rule in rules:
        assert admin.post(f"/api/templates/{template_id}/rules", json=rule).status_code == 201
    assert admin.post(f"/api/templates/{template_id}/products", json={"product_id": "2002"}).status_code == 201

    storefront_app = create_storefront_app(str(db))
    http_client = httpx.Client(transport=httpx.WSGITransport(app=storefront_app), base_url="http://storefront")
    container = HostContainer(attributes={"data-product-id": "2002", "data-api-url": "http://storefront"})
    session = StorefrontSession(container, loader=TemplateSnapshotLoader("http://storefront", client=http_client))
    session.initialize()

    ids = {field.name: field.id for field in session.snapshot.fields}
    assert session.form.field_ids() == [ids["wrap"], ids["extras"], ids["message"]]
    assert session.visible_field_ids() == [ids["wrap"], ids["extras"]]
    assert "background-color: #ffcc00" in str(container.content)

    session.dispatch(ControlEvent(type="change", field_id=ids["wrap"], value="Paper"))
    assert session.form.field_ids() == [ids["wrap"], ids["ribbon"], ids["extras"], ids["message"]]
    assert session.form.container(ids["ribbon"]).options == ("Gold", "Silver")

    session.dispatch(ControlEvent(type="change", field_id=ids["extras"], value="Card"))
    assert ids["message"] in session.visible_field_ids()

    cart_form = CartForm(action="/cart/add")
    blocked = SubmitEvent(form=cart_form)
    result = session.submit(blocked)
    assert result.allowed is False
    assert result.failing_field_id == ids["ribbon"]
    assert blocked.prevent_default_calls == 1
    assert "Please fill in the required field: Ribbon" in str(container.message)

    session.dispatch(ControlEvent(type="change", field_id=ids["ribbon"], value="Gold"))
    result = session.submit(SubmitEvent(form=cart_form))
    assert result.allowed is False
    assert result.failing_field_id == ids["message"]

    session.dispatch(ControlEvent(type="input", field_id=ids["message"], value="Happy birthday!"))
    session.dispatch(ControlEvent(type="change", field_id=ids["extras"], value="Bow"))
    accepted = SubmitEvent(form=cart_form)
    result = session.submit(accepted)
    assert result.allowed is True
    assert accepted.default_prevented is False
    assert str(container.message) == ""
    assert cart_form.form_data() == {
        "properties[wrap]": "Paper",
        "properties[ribbon]": "Gold",
        "properties[extras]": "Card, Bow",
        "properties[message]": "Happy birthday!",
    }

    session.dispatch(ControlEvent(type="change", field_id=ids["wrap"], value="None"))
    assert ids["ribbon"] not in session.form.field_ids()
    assert ids["ribbon"] not in session.values

    other_form = SubmitEvent(form=CartForm(action="/contact"))
    assert session.submit(other_form).allowed is True
    assert other_form.form.inputs == []
